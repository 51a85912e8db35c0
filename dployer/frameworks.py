"""Framework detection for working copies.

Detection looks at marker files in the working copy root, in priority order:
``artisan`` means Laravel, ``index.php`` means a static PHP site. Anything
else is ``unknown`` and cannot be deployed.

For Laravel projects the ``require.php`` constraint in ``composer.json``
decides whether the PHP 8.2 runtime variant of the recipe is needed.
"""

from __future__ import annotations

import enum
import typing as typ

import msgspec

from dployer.logging import get_logger, log_info, log_warning

if typ.TYPE_CHECKING:
    from pathlib import Path

logger = get_logger(__name__)

COMPOSER_MANIFEST = "composer.json"
MODERN_PHP_FLOOR = "8.2"


class Framework(enum.StrEnum):
    """Application frameworks with a build recipe."""

    LARAVEL = "laravel"
    STATIC_PHP = "static-php"
    UNKNOWN = "unknown"


class _ComposerManifest(msgspec.Struct):
    """The subset of ``composer.json`` consulted for the PHP check."""

    require: dict[str, str] = msgspec.field(default_factory=dict)


def detect_framework(working_copy: Path) -> Framework:
    """Classify ``working_copy`` by its root marker files.

    Examples
    --------
    A checkout with both ``artisan`` and ``index.php`` is Laravel:

    >>> detect_framework(Path("repositories/blog"))  # doctest: +SKIP
    <Framework.LARAVEL: 'laravel'>

    """
    if (working_copy / "artisan").exists():
        return Framework.LARAVEL
    if (working_copy / "index.php").exists():
        return Framework.STATIC_PHP
    return Framework.UNKNOWN


def _numeric_part(constraint: str) -> str:
    """Strip operators such as ``^``, ``~`` or ``>=`` from a constraint."""
    for index, char in enumerate(constraint):
        if char.isdigit():
            return constraint[index:]
    return ""


def constraint_allows_modern_php(constraint: str) -> bool:
    """Return True if any ``|`` alternative in ``constraint`` is >= 8.2.

    Each alternative is compared on its first three characters, so ``^8.1``
    is below the floor and ``~8.3`` or ``^9.0`` are at or above it.
    """
    return any(
        (numeric := _numeric_part(alternative))
        and numeric[: len(MODERN_PHP_FLOOR)] >= MODERN_PHP_FLOOR
        for alternative in constraint.split("|")
    )


def requires_modern_php(working_copy: Path) -> bool:
    """Report whether the Laravel app in ``working_copy`` needs PHP 8.2+.

    A missing, unreadable or malformed manifest selects the default variant
    and is logged as a warning.
    """
    manifest_path = working_copy / COMPOSER_MANIFEST
    try:
        manifest = msgspec.json.decode(
            manifest_path.read_bytes(), type=_ComposerManifest
        )
    except OSError as exc:
        log_warning(logger, "Could not read %s: %s", manifest_path, exc)
        return False
    except msgspec.DecodeError as exc:
        log_warning(logger, "Could not parse %s: %s", manifest_path, exc)
        return False

    constraint = manifest.require.get("php")
    if constraint is None:
        log_warning(logger, "%s declares no PHP requirement", manifest_path)
        return False

    log_info(logger, "Minimum PHP version required: %s", constraint)
    return constraint_allows_modern_php(constraint)
