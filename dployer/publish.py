"""Build a working copy's image and publish it as a Swarm service.

Publishing is idempotent at the service level: when the repository's service
already exists it receives a rolling update, otherwise it is created. It is
never created blindly, so repeated deploys cannot accumulate duplicates.
"""

from __future__ import annotations

import dataclasses
import enum
import os
import typing as typ

from dployer.docker import DockerSwarm, ServiceSpec
from dployer.errors import ValidationError
from dployer.frameworks import Framework, detect_framework, requires_modern_php
from dployer.logging import get_logger, log_info
from dployer.recipes import select_recipe, staged_build_context

if typ.TYPE_CHECKING:
    from dployer.executor import CommandExecutor
    from dployer.recipes import BuildRecipe, RecipeBundleProvider
    from dployer.registry.models import RepositoryRecord

logger = get_logger(__name__)


class PublishAction(enum.StrEnum):
    """How the service was brought up to date."""

    CREATED = "created"
    UPDATED = "updated"


@dataclasses.dataclass(frozen=True, slots=True)
class HostIdentity:
    """Numeric user and group the image build runs files as."""

    uid: int
    gid: int

    @classmethod
    def current(cls) -> HostIdentity:
        """Return the identity of the invoking user."""
        return cls(uid=os.getuid(), gid=os.getgid())


@dataclasses.dataclass(frozen=True, slots=True)
class PublishResult:
    """Summary of a successful publish."""

    repo_id: str
    framework: Framework
    recipe: BuildRecipe
    image_tag: str
    service_name: str
    action: PublishAction


class PublishEngine:
    """Stage, build and publish synced working copies.

    Parameters
    ----------
    executor:
        Executor used for every docker invocation.
    recipes:
        Provider of recipe bundles keyed by framework.
    identity:
        Build-time owner of files written by the image build. Defaults to the
        invoking user.

    """

    def __init__(
        self,
        executor: CommandExecutor,
        recipes: RecipeBundleProvider,
        identity: HostIdentity | None = None,
    ) -> None:
        """Configure the engine with its collaborators."""
        self._executor = executor
        self._recipes = recipes
        self._identity = identity or HostIdentity.current()

    def publish(self, record: RepositoryRecord) -> PublishResult:
        """Build ``record``'s image and create or update its service.

        Raises
        ------
        ValidationError
            If the working copy does not exist.
        ConfigError
            If the framework is unknown or its recipe bundle is missing.
        ExternalToolError
            If the build, create or update command fails.
        DployerError
            If the build context cannot be staged.

        """
        working_copy = record.working_copy.resolve()
        if not working_copy.is_dir():
            msg = f"Failed to resolve working copy {record.working_copy_path}"
            raise ValidationError(msg, repo_id=record.id, step="resolve-path")

        framework = detect_framework(working_copy)
        modern_php = framework is Framework.LARAVEL and requires_modern_php(
            working_copy
        )
        recipe = select_recipe(
            framework,
            modern_php=modern_php,
            provider=self._recipes,
            repo_id=record.id,
        )

        swarm = DockerSwarm(self._executor, repo_id=record.id)
        spec = ServiceSpec(
            name=record.service_name,
            image_tag=record.image_tag,
            port_mapping=record.publish_port_mapping,
            source_dir=working_copy,
        )

        log_info(
            logger,
            "Deploying repository %s with framework %s",
            record.id,
            framework.value,
        )
        with staged_build_context(
            working_copy, recipe, repo_id=record.id
        ) as staging:
            swarm.build_image(
                record.image_tag,
                recipe.dockerfile_in(staging),
                working_copy,
                uid=self._identity.uid,
                gid=self._identity.gid,
            )
            log_info(logger, "Image %s built", record.image_tag)
            action = self._publish_service(swarm, spec)

        swarm.prune_unused()
        return PublishResult(
            repo_id=record.id,
            framework=framework,
            recipe=recipe,
            image_tag=record.image_tag,
            service_name=spec.name,
            action=action,
        )

    def _publish_service(self, swarm: DockerSwarm, spec: ServiceSpec) -> PublishAction:
        if swarm.service_exists(spec.name):
            swarm.update_service(spec)
            log_info(logger, "Service %s updated", spec.name)
            return PublishAction.UPDATED

        swarm.create_service(spec)
        log_info(logger, "Service %s created", spec.name)
        return PublishAction.CREATED
