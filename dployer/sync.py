"""Reconcile a working copy with its upstream ref.

Branch refs go through a stash-protected update::

    DIRTY_CHECK -> [STASHED] -> FETCH_REBASE -> PULL -> [RESTORE] -> CLEAN
                                                             \\-> CONFLICT

Tag refs fast-forward to the newest tag instead, ending in ``UPDATED`` with
the record's ref and image tag moved to that tag.

States are transient; nothing but the resulting record is persisted, and
persisting it is left to the caller.
"""

from __future__ import annotations

import dataclasses
import enum
import typing as typ

from dployer.errors import ConflictError, ValidationError
from dployer.git import GitClient
from dployer.logging import get_logger, log_info, log_warning
from dployer.refs import RefKind, classify_ref

if typ.TYPE_CHECKING:
    from pathlib import Path

    from dployer.executor import CommandExecutor
    from dployer.registry.models import RepositoryRecord

logger = get_logger(__name__)


class SyncState(enum.StrEnum):
    """States visited while syncing one working copy."""

    START = "start"
    DIRTY_CHECK = "dirty-check"
    STASHED = "stashed"
    FETCH_REBASE = "fetch-rebase"
    PULL = "pull"
    RESTORE = "restore"
    CLEAN = "clean"
    UPDATED = "updated"
    CONFLICT = "conflict"


@dataclasses.dataclass(slots=True)
class SyncResult:
    """Outcome of a successful sync.

    Attributes
    ----------
    record
        The record to persist. For tag refs it carries the new ref and image
        tag; ``last_updated`` is refreshed by the caller.
    states
        Every state visited, in order.
    stashed
        Whether local changes were stashed and restored.

    """

    record: RepositoryRecord
    states: list[SyncState] = dataclasses.field(default_factory=list)
    stashed: bool = False

    @property
    def final_state(self) -> SyncState:
        """Return the terminal state of the run."""
        return self.states[-1]


class SyncEngine:
    """Bring working copies up to date with their upstream.

    Parameters
    ----------
    executor:
        Executor used for every git invocation.

    """

    def __init__(self, executor: CommandExecutor) -> None:
        """Configure the engine with a command executor."""
        self._executor = executor

    def sync(self, record: RepositoryRecord) -> SyncResult:
        """Sync ``record``'s working copy and return the updated record.

        Raises
        ------
        ValidationError
            If the working copy directory does not exist.
        ExternalToolError
            If fetch, rebase, pull or checkout fails. Any stash is left in
            place.
        ConflictError
            If restoring stashed changes conflicts. The stash is kept.

        """
        working_copy = record.working_copy
        if not working_copy.is_dir():
            msg = f"Working copy does not exist: {working_copy}"
            raise ValidationError(msg, repo_id=record.id, step="sync")

        states = [SyncState.START]
        git = GitClient(self._executor, record.id)
        if classify_ref(record.ref) is RefKind.TAG:
            return self._sync_tag(git, record, working_copy, states)
        return self._sync_branch(git, record, working_copy, states)

    def _sync_tag(
        self,
        git: GitClient,
        record: RepositoryRecord,
        working_copy: Path,
        states: list[SyncState],
    ) -> SyncResult:
        log_info(logger, "Updating repository %s to the latest version tag", record.id)
        git.fetch_tags(working_copy)
        tag = git.latest_tag(working_copy)
        git.checkout(working_copy, tag)
        states.append(SyncState.UPDATED)
        log_info(logger, "Repository %s checked out tag %s", record.id, tag)
        return SyncResult(record=record.with_ref(tag), states=states)

    def _stash_changes(
        self,
        git: GitClient,
        record: RepositoryRecord,
        working_copy: Path,
        states: list[SyncState],
    ) -> bool:
        states.append(SyncState.DIRTY_CHECK)
        if not git.is_dirty(working_copy):
            return False

        log_warning(logger, "Repository %s has local changes, stashing", record.id)
        git.stash(working_copy)
        states.append(SyncState.STASHED)

        if git.is_dirty(working_copy):
            log_warning(
                logger,
                "Repository %s still has uncommitted changes after stashing, "
                "unstaging them",
                record.id,
            )
            if not git.restore_staged(working_copy):
                log_warning(
                    logger, "Could not unstage changes in repository %s", record.id
                )
        return True

    def _sync_branch(
        self,
        git: GitClient,
        record: RepositoryRecord,
        working_copy: Path,
        states: list[SyncState],
    ) -> SyncResult:
        stashed = self._stash_changes(git, record, working_copy, states)

        states.append(SyncState.FETCH_REBASE)
        log_info(logger, "Rebasing branch %s in repository %s", record.ref, record.id)
        git.fetch_all(working_copy)
        git.rebase(working_copy)

        states.append(SyncState.PULL)
        log_info(logger, "Pulling branch %s in repository %s", record.ref, record.id)
        git.pull(working_copy)

        if stashed:
            states.append(SyncState.RESTORE)
            log_info(logger, "Applying stashed changes in repository %s", record.id)
            if not git.stash_pop(working_copy):
                states.append(SyncState.CONFLICT)
                msg = (
                    "Conflicts while applying stashed changes; the stash entry "
                    "has been kept, resolve manually"
                )
                raise ConflictError(msg, repo_id=record.id, step="stash-pop")

        states.append(SyncState.CLEAN)
        log_info(logger, "Repository %s updated", record.id)
        return SyncResult(record=record, states=states, stashed=stashed)


__all__ = ["SyncEngine", "SyncResult", "SyncState"]
