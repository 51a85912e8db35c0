"""Persistence model for the repository registry.

A single ``repositories`` table keyed by the operator-chosen id. Models keep
to portable SQLAlchemy types; the default store is a SQLite file in the
configuration directory.
"""

from __future__ import annotations

import datetime as dt  # noqa: TC003
import typing as typ

from sqlalchemy import DateTime, String, Text
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from dployer.common.time import utcnow

if typ.TYPE_CHECKING:
    from sqlalchemy import Engine


class Base(DeclarativeBase):
    """Base declarative class for registry persistence."""

    metadata: typ.Any


class RepositoryRow(Base):
    """Stored form of a :class:`~dployer.registry.models.RepositoryRecord`."""

    __tablename__ = "repositories"

    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    source_url: Mapped[str] = mapped_column(Text())
    working_copy_path: Mapped[str] = mapped_column(Text())
    ref: Mapped[str] = mapped_column(String(255))
    image_prefix: Mapped[str] = mapped_column(String(512))
    image_tag: Mapped[str] = mapped_column(String(512))
    publish_port_mapping: Mapped[str] = mapped_column(String(32))
    last_updated: Mapped[dt.datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow
    )


def init_registry_storage(engine: Engine) -> None:
    """Create the registry table if it does not already exist.

    Examples
    --------
    >>> from sqlalchemy import create_engine
    >>> engine = create_engine("sqlite:///repositories.db")
    >>> init_registry_storage(engine)

    """
    Base.metadata.create_all(engine)
