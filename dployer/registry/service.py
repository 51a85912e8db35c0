"""Repository registry backed by SQLAlchemy.

The lifecycle orchestrator depends only on the :class:`RepositoryRegistry`
protocol; :class:`SqlRepositoryRegistry` is the production implementation.
"""

from __future__ import annotations

import datetime as dt
import typing as typ

from sqlalchemy import create_engine, select
from sqlalchemy.orm import Session, sessionmaker

from dployer.common.time import utcnow
from dployer.errors import DuplicateRepositoryError, NotFoundError
from dployer.registry.models import RepositoryRecord
from dployer.registry.storage import RepositoryRow, init_registry_storage

SessionFactory: typ.TypeAlias = "sessionmaker[Session]"


class RepositoryRegistry(typ.Protocol):
    """Keyed store of repository records."""

    def insert(self, record: RepositoryRecord) -> None:
        """Add a new record; raise DuplicateRepositoryError if the id exists."""
        ...

    def get(self, repo_id: str) -> RepositoryRecord:
        """Return the record for ``repo_id``; raise NotFoundError if absent."""
        ...

    def list_all(self) -> list[RepositoryRecord]:
        """Return every record ordered by id."""
        ...

    def update(self, record: RepositoryRecord) -> None:
        """Replace the stored record with the same id."""
        ...

    def delete(self, repo_id: str) -> None:
        """Remove the record for ``repo_id``."""
        ...


def _as_utc(moment: dt.datetime | None) -> dt.datetime | None:
    # SQLite drops tzinfo on the way back.
    if moment is not None and moment.tzinfo is None:
        return moment.replace(tzinfo=dt.UTC)
    return moment


def _to_record(row: RepositoryRow) -> RepositoryRecord:
    return RepositoryRecord(
        id=row.id,
        source_url=row.source_url,
        working_copy_path=row.working_copy_path,
        ref=row.ref,
        image_prefix=row.image_prefix,
        image_tag=row.image_tag,
        publish_port_mapping=row.publish_port_mapping,
        last_updated=_as_utc(row.last_updated),
    )


class SqlRepositoryRegistry:
    """Registry persisted through a synchronous SQLAlchemy session factory.

    Parameters
    ----------
    session_factory:
        Session factory bound to a database where
        :func:`~dployer.registry.storage.init_registry_storage` has run.

    """

    def __init__(self, session_factory: SessionFactory) -> None:
        """Configure the registry with a session factory."""
        self._sf = session_factory

    @classmethod
    def from_url(cls, database_url: str) -> SqlRepositoryRegistry:
        """Open (and initialise) the registry at ``database_url``."""
        engine = create_engine(database_url)
        init_registry_storage(engine)
        return cls(sessionmaker(engine, expire_on_commit=False))

    def insert(self, record: RepositoryRecord) -> None:
        """Add ``record``; its id must not be registered yet."""
        with self._sf() as session, session.begin():
            if session.get(RepositoryRow, record.id) is not None:
                raise DuplicateRepositoryError(record.id)
            session.add(
                RepositoryRow(
                    id=record.id,
                    source_url=record.source_url,
                    working_copy_path=record.working_copy_path,
                    ref=record.ref,
                    image_prefix=record.image_prefix,
                    image_tag=record.image_tag,
                    publish_port_mapping=record.publish_port_mapping,
                    last_updated=record.last_updated or utcnow(),
                )
            )

    def get(self, repo_id: str) -> RepositoryRecord:
        """Return the record stored under ``repo_id``."""
        with self._sf() as session:
            row = session.get(RepositoryRow, repo_id)
            if row is None:
                raise NotFoundError(repo_id)
            return _to_record(row)

    def list_all(self) -> list[RepositoryRecord]:
        """Return all records ordered by id."""
        with self._sf() as session:
            rows = session.scalars(select(RepositoryRow).order_by(RepositoryRow.id))
            return [_to_record(row) for row in rows]

    def update(self, record: RepositoryRecord) -> None:
        """Overwrite the mutable fields of the record with ``record.id``."""
        with self._sf() as session, session.begin():
            row = session.get(RepositoryRow, record.id)
            if row is None:
                raise NotFoundError(record.id)
            row.source_url = record.source_url
            row.working_copy_path = record.working_copy_path
            row.ref = record.ref
            row.image_prefix = record.image_prefix
            row.image_tag = record.image_tag
            row.publish_port_mapping = record.publish_port_mapping
            if record.last_updated is not None:
                row.last_updated = record.last_updated

    def delete(self, repo_id: str) -> None:
        """Delete the record stored under ``repo_id``."""
        with self._sf() as session, session.begin():
            row = session.get(RepositoryRow, repo_id)
            if row is None:
                raise NotFoundError(repo_id)
            session.delete(row)
