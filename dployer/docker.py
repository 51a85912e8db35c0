"""Docker image and Swarm service operations.

This module keeps every docker argument list in one place so the publish
engine and the orchestrator deal only in intent: build this image, create or
update this service, remove it, reclaim unused resources.

Rolling-update parameters are fixed policy: services restart
``UPDATE_PARALLELISM`` replicas at a time with ``UPDATE_DELAY`` between
batches, and the working copy is bind-mounted at ``MOUNT_TARGET``.

Examples
--------
Build an image and publish it as a new service::

    swarm = DockerSwarm(SubprocessExecutor(), repo_id="blog")
    swarm.build_image("acme/blog:latest", dockerfile, context, uid=1000, gid=1000)
    if not swarm.service_exists("blog_service"):
        swarm.create_service(spec)

"""

from __future__ import annotations

import dataclasses
import typing as typ

from dployer.executor import Command, run_checked
from dployer.logging import get_logger, log_info, log_warning

if typ.TYPE_CHECKING:
    from pathlib import Path

    from dployer.executor import CommandExecutor

logger = get_logger(__name__)

UPDATE_DELAY = "10s"
UPDATE_PARALLELISM = 2
REPLICAS = 1
MOUNT_TARGET = "/app"

# Resource kinds reclaimed after a deploy.
PRUNE_TARGETS = ("image", "network", "volume")


@dataclasses.dataclass(frozen=True, slots=True)
class ServiceSpec:
    """Desired state of a repository's Swarm service."""

    name: str
    image_tag: str
    port_mapping: str
    source_dir: Path

    @property
    def mount(self) -> str:
        """Return the bind-mount specification for the working copy."""
        return f"type=bind,source={self.source_dir},target={MOUNT_TARGET}"


def _rolling_update_args() -> tuple[str, ...]:
    return (
        "--update-delay",
        UPDATE_DELAY,
        "--update-parallelism",
        str(UPDATE_PARALLELISM),
        "--with-registry-auth",
    )


class DockerSwarm:
    """Run docker commands on behalf of one repository.

    Parameters
    ----------
    executor:
        Executor used for every docker invocation.
    repo_id:
        Repository id attached to raised errors, if any.

    """

    def __init__(self, executor: CommandExecutor, repo_id: str | None = None) -> None:
        """Bind the client to an executor."""
        self._executor = executor
        self._repo_id = repo_id

    def _checked(
        self, argv: tuple[str, ...], step: str, *, stream: bool = False
    ) -> None:
        run_checked(
            self._executor,
            Command(argv=argv, stream=stream),
            repo_id=self._repo_id,
            step=step,
        )

    def build_image(
        self, image_tag: str, dockerfile: Path, context: Path, *, uid: int, gid: int
    ) -> None:
        """Build ``image_tag`` with the host user's ids as build arguments."""
        self._checked(
            (
                "docker",
                "build",
                "--build-arg",
                f"HOST_UID={uid}",
                "--build-arg",
                f"HOST_GID={gid}",
                "-t",
                image_tag,
                "-f",
                str(dockerfile),
                str(context),
            ),
            "build",
        )

    def service_exists(self, name: str) -> bool:
        """Return True when a Swarm service called ``name`` exists."""
        outcome = self._executor.run(
            Command(
                argv=("docker", "service", "inspect", "--format", "{{.ID}}", name),
            )
        )
        return outcome.succeeded

    def create_service(self, spec: ServiceSpec) -> None:
        """Create a single-replica service for ``spec``."""
        self._checked(
            (
                "docker",
                "service",
                "create",
                "--name",
                spec.name,
                "--replicas",
                str(REPLICAS),
                "--publish",
                spec.port_mapping,
                "--mount",
                spec.mount,
                *_rolling_update_args(),
                spec.image_tag,
            ),
            "publish-create",
        )

    def update_service(self, spec: ServiceSpec) -> None:
        """Roll ``spec.name`` onto the new image, ports and mount."""
        self._checked(
            (
                "docker",
                "service",
                "update",
                "--force",
                "--image",
                spec.image_tag,
                "--publish-add",
                spec.port_mapping,
                "--mount-add",
                spec.mount,
                *_rolling_update_args(),
                spec.name,
            ),
            "publish-update",
        )

    def remove_service(self, name: str) -> bool:
        """Remove service ``name``; return False if docker refused."""
        return self._executor.run(
            Command(argv=("docker", "service", "rm", name))
        ).succeeded

    def prune_unused(self) -> list[str]:
        """Prune dangling images, unused networks and volumes.

        Failures are logged and reported, never raised.

        Returns
        -------
        list[str]
            The resource kinds whose prune failed.

        """
        log_info(logger, "Cleaning up dangling images and unused resources")
        failed: list[str] = []
        for target in PRUNE_TARGETS:
            outcome = self._executor.run(
                Command(argv=("docker", target, "prune", "-f"))
            )
            if not outcome.succeeded:
                log_warning(logger, "Failed to prune unused %ss", target)
                failed.append(target)
        return failed

    def stream_logs(self, name: str, *, follow: bool) -> None:
        """Print the logs of service ``name`` to the terminal."""
        argv = ("docker", "service", "logs", *(("-f",) if follow else ()), name)
        self._checked(argv, "logs", stream=True)

    def init_swarm(self) -> bool:
        """Try ``docker swarm init``; return False if it failed."""
        return self._executor.run(Command(argv=("docker", "swarm", "init"))).succeeded

    def swarm_active(self) -> bool:
        """Return True when this node is a Swarm manager."""
        return self._executor.run(Command(argv=("docker", "node", "ls"))).succeeded


__all__ = [
    "MOUNT_TARGET",
    "UPDATE_DELAY",
    "UPDATE_PARALLELISM",
    "DockerSwarm",
    "ServiceSpec",
]
