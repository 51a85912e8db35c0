"""Preflight checks for the host tooling dployer drives.

Utilities
---------
- ``require_exe``: verifies a CLI tool (git, docker) is on ``PATH``
- ``check_requirements``: verifies both tools and makes sure this node can
  run Swarm services

Examples
--------
Run the checks before a deploy::

    check_requirements(SubprocessExecutor())

"""

from __future__ import annotations

import shutil
import typing as typ

from dployer.docker import DockerSwarm
from dployer.errors import ExecutableNotFoundError
from dployer.logging import get_logger, log_info, log_warning

if typ.TYPE_CHECKING:
    from dployer.executor import CommandExecutor

logger = get_logger(__name__)

REQUIRED_EXECUTABLES = ("git", "docker")


def require_exe(name: str) -> None:
    """Verify a CLI tool is available in PATH.

    Parameters
    ----------
    name : str
        Name of the executable to check for.

    Raises
    ------
    ExecutableNotFoundError
        If the executable is not found in PATH.

    """
    if shutil.which(name) is None:
        raise ExecutableNotFoundError(name)


def check_requirements(executor: CommandExecutor) -> bool:
    """Check the required tools and the Swarm state of this node.

    ``docker swarm init`` is attempted first. When it fails the node may
    already belong to a swarm, which ``docker node ls`` confirms. A node
    that is in no swarm at all is reported with a warning only; deploying
    will then fail at the publish step.

    Returns
    -------
    bool
        True when this node can run Swarm services.

    Raises
    ------
    ExecutableNotFoundError
        If git or docker is missing.

    """
    for exe in REQUIRED_EXECUTABLES:
        require_exe(exe)

    swarm = DockerSwarm(executor)
    if swarm.init_swarm():
        log_info(logger, "Docker Swarm initialised")
        return True
    if swarm.swarm_active():
        log_info(logger, "Docker Swarm already active")
        return True

    log_warning(logger, "Docker Swarm is neither active nor could be initialised")
    return False


__all__ = ["REQUIRED_EXECUTABLES", "check_requirements", "require_exe"]
