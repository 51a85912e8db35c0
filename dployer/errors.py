"""Error taxonomy for repository lifecycle operations.

Each error names the repository and the step that failed so a bulk run can
report exactly which repository stopped where.
"""

from __future__ import annotations

import typing as typ

if typ.TYPE_CHECKING:
    import collections.abc as cabc


class DployerError(Exception):
    """Base class for all dployer errors."""

    def __init__(
        self, message: str, *, repo_id: str | None = None, step: str | None = None
    ) -> None:
        """Initialise with a message and optional repository/step context."""
        self.repo_id = repo_id
        self.step = step
        self.reason = message
        super().__init__(self._render(message))

    def _render(self, message: str) -> str:
        context = [
            part
            for part in (
                f"repository {self.repo_id}" if self.repo_id else None,
                f"step {self.step}" if self.step else None,
            )
            if part
        ]
        if not context:
            return message
        return f"[{', '.join(context)}] {message}"


class ValidationError(DployerError):
    """Raised for malformed or missing input and unresolvable paths."""


class DuplicateRepositoryError(ValidationError):
    """Raised when registering an id that is already tracked."""

    def __init__(self, repo_id: str) -> None:
        """Initialise with the id that is already registered."""
        super().__init__(
            f"Repository already registered: {repo_id}",
            repo_id=repo_id,
            step="register",
        )


class NotFoundError(DployerError):
    """Raised when a repository id is not present in the registry."""

    def __init__(self, repo_id: str) -> None:
        """Initialise with the missing repository id."""
        super().__init__(f"Repository not found: {repo_id}", repo_id=repo_id)


class ExternalToolError(DployerError):
    """Raised when a git or docker invocation exits non-zero."""

    def __init__(
        self,
        argv: cabc.Sequence[str],
        exit_code: int,
        *,
        repo_id: str | None = None,
        step: str | None = None,
    ) -> None:
        """Initialise with the failing command line and its exit code."""
        self.argv = tuple(argv)
        self.exit_code = exit_code
        super().__init__(
            f"Command failed with exit code {exit_code}: {' '.join(self.argv)}",
            repo_id=repo_id,
            step=step,
        )


class ConflictError(DployerError):
    """Raised when restoring stashed changes conflicts with the pulled tree.

    The stash entry is kept; resolving the conflict is left to the operator.
    """


class ConfigError(DployerError):
    """Raised for unknown frameworks, missing recipe bundles and bad settings."""


class ExecutableNotFoundError(ConfigError):
    """Required CLI tool is not installed."""

    def __init__(self, name: str) -> None:
        """Initialise with the missing executable name."""
        self.executable = name
        super().__init__(
            f"Required executable '{name}' not found in PATH", step="preflight"
        )


__all__ = [
    "ConfigError",
    "ConflictError",
    "DployerError",
    "DuplicateRepositoryError",
    "ExecutableNotFoundError",
    "ExternalToolError",
    "NotFoundError",
    "ValidationError",
]
