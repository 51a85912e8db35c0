"""Runtime configuration for dployer.

Settings are resolved once at startup from environment variables. The
configuration directory defaults to ``$HOME/.config/dployer``; it holds the
registry database, the managed repositories root and the recipe bundles.

Usage
-----
>>> config = DployerConfig.from_env({"HOME": "/home/ops"})
>>> str(config.repositories_dir)
'/home/ops/.config/dployer/repositories'

"""

from __future__ import annotations

import dataclasses as dc
import enum
import os
import typing as typ
from pathlib import Path

from dployer.errors import ConfigError

if typ.TYPE_CHECKING:
    import collections.abc as cabc

CONFIG_DIR_NAME = "dployer"
DATABASE_FILENAME = "repositories.db"


class BatchPolicy(enum.StrEnum):
    """What a bulk sync/deploy does after one repository fails."""

    STOP = "stop"
    CONTINUE = "continue"


@dc.dataclass(frozen=True, slots=True)
class DployerConfig:
    """Resolved locations and policies.

    Attributes
    ----------
    config_dir
        Directory holding the registry database and default sub-directories.
    repositories_dir
        Managed root under which every working copy lives.
    recipes_dir
        Root of the recipe bundles, one sub-directory per framework name.
    database_url
        SQLAlchemy URL of the registry store.
    batch_policy
        Failure handling for the "all" variants of sync and deploy.
    log_level
        Raw log level string handed to ``configure_logging``.

    """

    config_dir: Path
    repositories_dir: Path
    recipes_dir: Path
    database_url: str
    batch_policy: BatchPolicy = BatchPolicy.STOP
    log_level: str = "INFO"

    @classmethod
    def for_directory(
        cls,
        config_dir: Path,
        *,
        batch_policy: BatchPolicy = BatchPolicy.STOP,
    ) -> DployerConfig:
        """Build a configuration with every location under ``config_dir``."""
        return cls(
            config_dir=config_dir,
            repositories_dir=config_dir / "repositories",
            recipes_dir=config_dir / "recipes",
            database_url=f"sqlite:///{config_dir / DATABASE_FILENAME}",
            batch_policy=batch_policy,
        )

    @staticmethod
    def _resolve_config_dir(environ: cabc.Mapping[str, str]) -> Path:
        override = environ.get("DPLOYER_CONFIG_DIR", "").strip()
        if override:
            return Path(override).expanduser()

        home = environ.get("HOME", "").strip()
        if not home:
            msg = "Cannot resolve the home directory: HOME is not set"
            raise ConfigError(msg, step="startup")
        return Path(home) / ".config" / CONFIG_DIR_NAME

    @staticmethod
    def _parse_batch_policy(raw: str) -> BatchPolicy:
        value = raw.strip().lower() or BatchPolicy.STOP.value
        try:
            return BatchPolicy(value)
        except ValueError as exc:
            choices = ", ".join(policy.value for policy in BatchPolicy)
            msg = f"DPLOYER_BATCH_POLICY must be one of {choices}, got: {raw!r}"
            raise ConfigError(msg, step="startup") from exc

    @classmethod
    def from_env(cls, environ: cabc.Mapping[str, str] | None = None) -> DployerConfig:
        """Create configuration from environment variables.

        Reads ``DPLOYER_CONFIG_DIR``, ``DPLOYER_REPOSITORIES_DIR``,
        ``DPLOYER_RECIPES_DIR``, ``DPLOYER_DATABASE_URL``,
        ``DPLOYER_BATCH_POLICY`` and ``DPLOYER_LOG_LEVEL``; anything unset
        falls back to a location under the configuration directory.

        Raises
        ------
        ConfigError
            If no home directory can be resolved or the batch policy is not
            recognised.

        """
        env = os.environ if environ is None else environ
        config_dir = cls._resolve_config_dir(env)
        base = cls.for_directory(
            config_dir,
            batch_policy=cls._parse_batch_policy(env.get("DPLOYER_BATCH_POLICY", "")),
        )

        repositories_dir = env.get("DPLOYER_REPOSITORIES_DIR", "").strip()
        recipes_dir = env.get("DPLOYER_RECIPES_DIR", "").strip()
        database_url = env.get("DPLOYER_DATABASE_URL", "").strip()

        return dc.replace(
            base,
            repositories_dir=(
                Path(repositories_dir).expanduser()
                if repositories_dir
                else base.repositories_dir
            ),
            recipes_dir=(
                Path(recipes_dir).expanduser() if recipes_dir else base.recipes_dir
            ),
            database_url=database_url or base.database_url,
            log_level=env.get("DPLOYER_LOG_LEVEL", "INFO"),
        )

    def ensure_directories(self) -> None:
        """Create the configuration and repositories directories if missing."""
        self.config_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
        self.repositories_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
