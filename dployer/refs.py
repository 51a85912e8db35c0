"""Ref classification and image tag derivation.

A ref is treated as a version tag when it starts with ``v`` or contains a
``.``; everything else is a branch. The rule is a naming heuristic and never
asks git, so a branch literally called ``release.1`` is classified as a tag.

Examples
--------
>>> classify_ref("v2.3.1")
<RefKind.TAG: 'tag'>
>>> derive_image_tag("acme/app", "main")
'acme/app:latest'

"""

from __future__ import annotations

import enum

# Branch names with a dedicated image tag.
_BRANCH_TAG_ALIASES = {
    "main": "latest",
    "dev": "dev",
}


class RefKind(enum.StrEnum):
    """Kinds of refs a working copy can track."""

    BRANCH = "branch"
    TAG = "tag"


def classify_ref(ref: str) -> RefKind:
    """Return ``TAG`` if ``ref`` starts with ``v`` or contains ``.``."""
    if ref.startswith("v") or "." in ref:
        return RefKind.TAG
    return RefKind.BRANCH


def is_tag(ref: str) -> bool:
    """Return True when ``ref`` classifies as a version tag."""
    return classify_ref(ref) is RefKind.TAG


def derive_image_tag(prefix: str, ref: str) -> str:
    """Build the image tag for ``ref`` under ``prefix``.

    ``main`` maps to ``latest``, ``dev`` keeps ``dev`` and any other ref is
    used verbatim.
    """
    return f"{prefix}:{_BRANCH_TAG_ALIASES.get(ref, ref)}"


__all__ = [
    "RefKind",
    "classify_ref",
    "derive_image_tag",
    "is_tag",
]
