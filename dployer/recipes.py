"""Build recipes and build-context staging.

A recipe pairs a framework with the build-definition file to use. The
supporting files come from a recipe bundle, a directory supplied by
configuration and keyed by framework name. During a deploy the bundle is
copied into a freshly created hidden scratch directory inside the working
copy, which is removed again once the build and publish steps finish,
whatever their outcome. A repository's own ``docker/`` directory is never
touched.
"""

from __future__ import annotations

import contextlib
import dataclasses
import shutil
import tempfile
import typing as typ
from pathlib import Path

from dployer.errors import ConfigError, DployerError
from dployer.frameworks import Framework
from dployer.logging import get_logger, log_info, log_warning

if typ.TYPE_CHECKING:
    import collections.abc as cabc

logger = get_logger(__name__)

STAGING_DIR_PREFIX = ".dployer-build-"
DEFAULT_DOCKERFILE = "Dockerfile"
MODERN_PHP_DOCKERFILE = "php82.dockerfile"


@dataclasses.dataclass(frozen=True, slots=True)
class BuildRecipe:
    """The build definition chosen for a working copy."""

    framework: Framework
    dockerfile_name: str
    bundle_dir: Path

    def dockerfile_in(self, staging: Path) -> Path:
        """Return the build-definition path inside a staged build context."""
        return staging / self.dockerfile_name


class RecipeBundleProvider(typ.Protocol):
    """Locates recipe bundles by framework."""

    def bundle_for(self, framework: Framework) -> Path:
        """Return the bundle directory for ``framework``."""
        ...


class DirectoryRecipeProvider:
    """Serve bundles from ``<root>/<framework name>`` directories."""

    def __init__(self, root: Path) -> None:
        """Configure the provider with the recipes root."""
        self._root = root

    def bundle_for(self, framework: Framework) -> Path:
        """Return the bundle directory for ``framework``.

        Raises
        ------
        ConfigError
            If the bundle directory does not exist.

        """
        bundle = self._root / framework.value
        if not bundle.is_dir():
            msg = f"Recipe bundle for {framework.value} not found at {bundle}"
            raise ConfigError(msg, step="select-recipe")
        return bundle


def select_recipe(
    framework: Framework,
    *,
    modern_php: bool,
    provider: RecipeBundleProvider,
    repo_id: str | None = None,
) -> BuildRecipe:
    """Choose the build recipe for ``framework``.

    Raises
    ------
    ConfigError
        For ``Framework.UNKNOWN`` or a missing bundle.

    """
    if framework is Framework.UNKNOWN:
        msg = "Unknown framework; deployment aborted"
        raise ConfigError(msg, repo_id=repo_id, step="detect-framework")

    dockerfile = (
        MODERN_PHP_DOCKERFILE
        if framework is Framework.LARAVEL and modern_php
        else DEFAULT_DOCKERFILE
    )
    try:
        bundle_dir = provider.bundle_for(framework)
    except ConfigError as exc:
        raise ConfigError(exc.reason, repo_id=repo_id, step=exc.step) from exc
    return BuildRecipe(
        framework=framework, dockerfile_name=dockerfile, bundle_dir=bundle_dir
    )


def _stage(working_copy: Path, recipe: BuildRecipe, repo_id: str | None) -> Path:
    try:
        staging = Path(tempfile.mkdtemp(prefix=STAGING_DIR_PREFIX, dir=working_copy))
    except OSError as exc:
        msg = f"Could not create a build context in {working_copy}: {exc}"
        raise DployerError(msg, repo_id=repo_id, step="stage-build-context") from exc

    try:
        shutil.copytree(recipe.bundle_dir, staging, dirs_exist_ok=True)
    except OSError as exc:
        _remove_staging(staging)
        msg = f"Could not copy recipe bundle {recipe.bundle_dir}: {exc}"
        raise DployerError(msg, repo_id=repo_id, step="stage-build-context") from exc
    return staging


@contextlib.contextmanager
def staged_build_context(
    working_copy: Path, recipe: BuildRecipe, *, repo_id: str | None = None
) -> cabc.Iterator[Path]:
    """Copy ``recipe``'s bundle into a scratch directory in the working copy.

    Each call gets its own uniquely named directory, so neither a directory
    shipped with the repository nor one left behind by an interrupted deploy
    gets in the way. The directory is removed on exit, including when the
    body raises.

    Yields
    ------
    Path
        The staged build context.

    Raises
    ------
    DployerError
        If the scratch directory cannot be created or the bundle cannot be
        copied into it.
    ConfigError
        If the staged bundle lacks the recipe's build definition.

    """
    staging = _stage(working_copy, recipe, repo_id)
    try:
        if not recipe.dockerfile_in(staging).is_file():
            msg = (
                f"Recipe bundle {recipe.bundle_dir} has no "
                f"{recipe.dockerfile_name}"
            )
            raise ConfigError(msg, repo_id=repo_id, step="stage-build-context")
        log_info(logger, "Staged %s recipe in %s", recipe.framework.value, staging)
        yield staging
    finally:
        _remove_staging(staging)


def _remove_staging(staging: Path) -> None:
    if not staging.exists():
        return
    try:
        shutil.rmtree(staging)
    except OSError as exc:
        log_warning(logger, "Failed to remove build context %s: %s", staging, exc)
    else:
        log_info(logger, "Removed build context %s", staging)
