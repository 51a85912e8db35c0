"""Data transfer objects for the repository registry."""

from __future__ import annotations

import dataclasses
import datetime as dt  # noqa: TC003
from pathlib import Path

from dployer.refs import derive_image_tag


@dataclasses.dataclass(slots=True, frozen=True)
class RepositoryRecord:
    """One tracked repository.

    ``image_prefix`` is stored alongside ``image_tag`` so the tag can be
    recomputed for any ref, including branch names containing ``/`` or ``:``.
    :meth:`with_ref` recomputes it whenever the ref changes.
    """

    id: str
    source_url: str
    working_copy_path: str
    ref: str
    image_prefix: str
    image_tag: str
    publish_port_mapping: str
    last_updated: dt.datetime | None = None

    @property
    def working_copy(self) -> Path:
        """Return the working copy location as a path."""
        return Path(self.working_copy_path)

    @property
    def service_name(self) -> str:
        """Return the Swarm service name for this repository."""
        return f"{self.id}_service"

    def with_ref(self, ref: str) -> RepositoryRecord:
        """Return a copy tracking ``ref`` with the image tag recomputed."""
        return dataclasses.replace(
            self, ref=ref, image_tag=derive_image_tag(self.image_prefix, ref)
        )

    def touched(self, moment: dt.datetime) -> RepositoryRecord:
        """Return a copy with ``last_updated`` set to ``moment``."""
        return dataclasses.replace(self, last_updated=moment)
