"""Repository registry: the keyed store of tracked repositories.

Usage
-----
Open the SQLite-backed registry and look up a record::

    from dployer.registry import SqlRepositoryRegistry

    registry = SqlRepositoryRegistry.from_url("sqlite:///repositories.db")
    record = registry.get("blog")
    print(record.image_tag)

"""

from dployer.registry.models import RepositoryRecord
from dployer.registry.service import RepositoryRegistry, SqlRepositoryRegistry
from dployer.registry.storage import init_registry_storage

__all__ = [
    "RepositoryRecord",
    "RepositoryRegistry",
    "SqlRepositoryRegistry",
    "init_registry_storage",
]
