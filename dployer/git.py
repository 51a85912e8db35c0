"""Git operations on working copies.

``GitClient`` builds git argument lists and runs them through an injected
:class:`~dployer.executor.CommandExecutor`. Steps whose failure aborts an
operation raise :class:`~dployer.errors.ExternalToolError`; steps whose exit
status is itself the answer (dirtiness, stash restore) return a boolean.
"""

from __future__ import annotations

import typing as typ

from dployer.errors import ValidationError
from dployer.executor import Command, run_checked

if typ.TYPE_CHECKING:
    from pathlib import Path

    from dployer.executor import CommandExecutor


def _git(working_copy: Path | None, *args: str, capture: bool = False) -> Command:
    return Command(argv=("git", *args), cwd=working_copy, capture=capture)


class GitClient:
    """Run git commands for a single repository id.

    Parameters
    ----------
    executor:
        Executor used for every git invocation.
    repo_id:
        Repository id attached to raised errors.

    """

    def __init__(self, executor: CommandExecutor, repo_id: str) -> None:
        """Bind the client to an executor and a repository id."""
        self._executor = executor
        self._repo_id = repo_id

    def _checked(self, command: Command, step: str) -> str:
        outcome = run_checked(
            self._executor, command, repo_id=self._repo_id, step=step
        )
        return outcome.stdout.strip()

    def clone(self, source_url: str, ref: str, destination: Path) -> None:
        """Clone ``source_url`` at ``ref`` into ``destination``."""
        self._checked(
            _git(None, "clone", "-b", ref, source_url, str(destination)), "clone"
        )

    def is_dirty(self, working_copy: Path) -> bool:
        """Return True when the tree differs from HEAD."""
        outcome = self._executor.run(
            _git(working_copy, "diff", "--quiet", "--ignore-submodules", "HEAD")
        )
        return not outcome.succeeded

    def stash(self, working_copy: Path) -> None:
        """Shelve local modifications."""
        self._checked(_git(working_copy, "stash"), "stash")

    def restore_staged(self, working_copy: Path) -> bool:
        """Unstage everything; return False if git refused."""
        return self._executor.run(
            _git(working_copy, "restore", "--staged", ".")
        ).succeeded

    def fetch_all(self, working_copy: Path) -> None:
        """Fetch every remote."""
        self._checked(_git(working_copy, "fetch", "--all"), "fetch")

    def fetch_tags(self, working_copy: Path) -> None:
        """Fetch tags from the default remote."""
        self._checked(_git(working_copy, "fetch", "--tags"), "fetch-tags")

    def rebase(self, working_copy: Path) -> None:
        """Rebase the current branch onto its upstream."""
        self._checked(_git(working_copy, "rebase"), "rebase")

    def pull(self, working_copy: Path) -> None:
        """Pull the current branch."""
        self._checked(_git(working_copy, "pull"), "pull")

    def stash_pop(self, working_copy: Path) -> bool:
        """Re-apply the latest stash; return False on conflict.

        A failed ``stash pop`` leaves the stash entry in place.
        """
        return self._executor.run(_git(working_copy, "stash", "pop")).succeeded

    def latest_tag(self, working_copy: Path) -> str:
        """Return the name of the tag on the most recently committed tagged commit."""
        commit = self._checked(
            _git(
                working_copy, "rev-list", "--tags", "--max-count=1", capture=True
            ),
            "resolve-latest-tag",
        )
        if not commit:
            msg = "Repository has no tags to check out"
            raise ValidationError(
                msg, repo_id=self._repo_id, step="resolve-latest-tag"
            )
        return self._checked(
            _git(working_copy, "describe", "--tags", commit, capture=True),
            "resolve-latest-tag",
        )

    def checkout(self, working_copy: Path, target: str) -> None:
        """Check out a branch, tag or ``tags/<name>`` spec."""
        self._checked(_git(working_copy, "checkout", target), "checkout")


__all__ = ["GitClient"]
