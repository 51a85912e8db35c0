"""Operator-facing repository lifecycle.

:class:`LifecycleOrchestrator` is the single entry point for register, sync,
switch, deploy and remove. Each operation is a short sequence over the sync
engine, the publish engine and the registry, and writes the record back only
once the step that justifies the change has succeeded.

Bulk variants walk the registry in id order, one repository at a time, and
apply the configured :class:`~dployer.config.BatchPolicy` when a repository
fails.
"""

from __future__ import annotations

import dataclasses
import re
import shutil
import typing as typ
from pathlib import Path

from dployer.common.time import backup_suffix, utcnow
from dployer.config import BatchPolicy
from dployer.docker import DockerSwarm
from dployer.errors import (
    DployerError,
    DuplicateRepositoryError,
    NotFoundError,
    ValidationError,
)
from dployer.frameworks import detect_framework
from dployer.git import GitClient
from dployer.logging import get_logger, log_error, log_info, log_warning
from dployer.publish import PublishEngine
from dployer.refs import RefKind, classify_ref, derive_image_tag
from dployer.registry.models import RepositoryRecord
from dployer.sync import SyncEngine

if typ.TYPE_CHECKING:
    import collections.abc as cabc
    import datetime as dt

    from dployer.config import DployerConfig
    from dployer.executor import CommandExecutor
    from dployer.publish import HostIdentity, PublishResult
    from dployer.recipes import RecipeBundleProvider
    from dployer.registry.service import RepositoryRegistry
    from dployer.sync import SyncResult

logger = get_logger(__name__)

_PORT_MAPPING = re.compile(r"^(?P<host>\d{1,5}):(?P<container>\d{1,5})$")
_MAX_PORT = 65535

Clock: typ.TypeAlias = "cabc.Callable[[], dt.datetime]"


@dataclasses.dataclass(slots=True)
class BatchReport:
    """Per-repository outcome of a bulk sync or deploy.

    Attributes
    ----------
    succeeded
        Ids processed without error, in processing order.
    failed
        Errors keyed by the id that raised them.
    skipped
        Ids never attempted because the batch stopped early.

    """

    succeeded: list[str] = dataclasses.field(default_factory=list)
    failed: dict[str, DployerError] = dataclasses.field(default_factory=dict)
    skipped: list[str] = dataclasses.field(default_factory=list)

    @property
    def ok(self) -> bool:
        """Return True when no repository failed."""
        return not self.failed


def validate_port_mapping(port_mapping: str) -> str:
    """Return ``port_mapping`` if it is a ``host:container`` port pair.

    Raises
    ------
    ValidationError
        If either side is missing, non-numeric or outside 1-65535.

    """
    match = _PORT_MAPPING.match(port_mapping.strip())
    if match is None or not all(
        0 < int(port) <= _MAX_PORT for port in match.group("host", "container")
    ):
        msg = f"Port mapping must be host:container, got: {port_mapping!r}"
        raise ValidationError(msg, step="register")
    return match.group(0)


def _require_text(value: str, field: str, repo_id: str | None) -> str:
    stripped = value.strip()
    if not stripped:
        msg = f"{field} must not be empty"
        raise ValidationError(msg, repo_id=repo_id, step="register")
    return stripped


class LifecycleOrchestrator:
    """Sequence registry, sync and publish steps for operator actions.

    Parameters
    ----------
    registry:
        Store of repository records.
    executor:
        Executor shared by every git and docker call.
    recipes:
        Provider of recipe bundles for the publish engine.
    config:
        Resolved locations and the batch policy.
    identity:
        Build identity for image builds. Defaults to the invoking user.
    clock:
        Source of ``last_updated`` timestamps.

    """

    def __init__(  # noqa: PLR0913
        self,
        registry: RepositoryRegistry,
        executor: CommandExecutor,
        recipes: RecipeBundleProvider,
        config: DployerConfig,
        *,
        identity: HostIdentity | None = None,
        clock: Clock = utcnow,
    ) -> None:
        """Wire the orchestrator to its collaborators."""
        self._registry = registry
        self._executor = executor
        self._config = config
        self._clock = clock
        self._sync_engine = SyncEngine(executor)
        self._publish_engine = PublishEngine(executor, recipes, identity)

    # ------------------------------------------------------------------
    # Register
    # ------------------------------------------------------------------

    def _resolve_destination(self, repo_id: str, destination: str) -> Path:
        relative = Path(_require_text(destination, "Destination", repo_id))
        if relative.is_absolute():
            msg = (
                "Destination must be relative to the repositories root: "
                f"{destination}"
            )
            raise ValidationError(msg, repo_id=repo_id, step="register")

        root = self._config.repositories_dir.resolve()
        target = (root / relative).resolve()
        if target == root or not target.is_relative_to(root):
            msg = f"Destination escapes the repositories root: {destination}"
            raise ValidationError(msg, repo_id=repo_id, step="register")
        return target

    def _move_aside(self, repo_id: str, target: Path) -> None:
        if not target.exists():
            return
        backup = target.with_name(target.name + backup_suffix(self._clock()))
        log_warning(
            logger,
            "Destination %s already exists; moving it to %s",
            target,
            backup,
        )
        try:
            target.rename(backup)
        except OSError as exc:
            msg = f"Could not move existing {target} aside: {exc}"
            raise ValidationError(msg, repo_id=repo_id, step="register") from exc

    def register(  # noqa: PLR0913
        self,
        repo_id: str,
        source_url: str,
        destination: str,
        *,
        image_prefix: str,
        port_mapping: str,
        ref: str = "main",
    ) -> RepositoryRecord:
        """Clone a repository and start tracking it.

        Parameters
        ----------
        repo_id:
            Operator-chosen unique id.
        source_url:
            Remote to clone.
        destination:
            Working copy path relative to the repositories root.
        image_prefix:
            Image name without a tag, such as ``acme/blog``.
        port_mapping:
            ``host:container`` publication for the service.
        ref:
            Branch or tag to clone.

        Returns
        -------
        RepositoryRecord
            The inserted record.

        Raises
        ------
        ValidationError
            For empty or malformed input, a destination outside the
            repositories root, or an id that is already registered.
        ExternalToolError
            If the clone fails; nothing is inserted.

        """
        repo_id = _require_text(repo_id, "Repository id", None)
        source_url = _require_text(source_url, "Source URL", repo_id)
        ref = _require_text(ref, "Ref", repo_id)
        image_prefix = _require_text(image_prefix, "Image prefix", repo_id)
        if ":" in image_prefix.rsplit("/", 1)[-1]:
            msg = f"Image prefix must not carry a tag: {image_prefix}"
            raise ValidationError(msg, repo_id=repo_id, step="register")
        try:
            port_mapping = validate_port_mapping(port_mapping)
        except ValidationError as exc:
            raise ValidationError(exc.reason, repo_id=repo_id, step=exc.step) from exc

        try:
            self._registry.get(repo_id)
        except NotFoundError:
            pass
        else:
            raise DuplicateRepositoryError(repo_id)

        root = self._config.repositories_dir
        try:
            root.mkdir(mode=0o700, parents=True, exist_ok=True)
        except OSError as exc:
            msg = f"Could not create the repositories root {root}: {exc}"
            raise DployerError(msg, repo_id=repo_id, step="register") from exc
        target = self._resolve_destination(repo_id, destination)
        self._move_aside(repo_id, target)

        record = RepositoryRecord(
            id=repo_id,
            source_url=source_url,
            working_copy_path=str(target),
            ref=ref,
            image_prefix=image_prefix,
            image_tag=derive_image_tag(image_prefix, ref),
            publish_port_mapping=port_mapping,
        )

        log_info(logger, "Cloning %s into %s at %s", source_url, target, ref)
        GitClient(self._executor, repo_id).clone(source_url, ref, target)
        framework = detect_framework(target)
        log_info(logger, "Repository %s detected as %s", repo_id, framework.value)

        record = record.touched(self._clock())
        self._registry.insert(record)
        log_info(logger, "Repository %s registered as %s", repo_id, record.image_tag)
        return record

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------

    def sync(self, repo_id: str) -> SyncResult:
        """Sync one repository and persist the refreshed record.

        A failed sync, including a stash conflict, leaves the stored record
        untouched.
        """
        record = self._registry.get(repo_id)
        result = self._sync_engine.sync(record)
        updated = result.record.touched(self._clock())
        self._registry.update(updated)
        result.record = updated
        return result

    def sync_all(self) -> BatchReport:
        """Sync every registered repository in id order."""
        return self._run_batch("sync", self.sync)

    # ------------------------------------------------------------------
    # Switch ref
    # ------------------------------------------------------------------

    def switch_ref(self, repo_id: str, ref: str) -> RepositoryRecord:
        """Check out ``ref`` and track it from now on.

        The stored ref and image tag change only after the checkout succeeds.

        Raises
        ------
        ValidationError
            If ``ref`` is empty or the working copy is missing.
        ExternalToolError
            If the fetch or checkout fails.

        """
        ref = _require_text(ref, "Ref", repo_id)
        record = self._registry.get(repo_id)
        working_copy = record.working_copy
        if not working_copy.is_dir():
            msg = f"Working copy does not exist: {working_copy}"
            raise ValidationError(msg, repo_id=repo_id, step="switch")

        updated = record.with_ref(ref)
        git = GitClient(self._executor, repo_id)
        git.fetch_all(working_copy)
        kind = classify_ref(ref)
        target = f"tags/{ref}" if kind is RefKind.TAG else ref
        log_info(logger, "Switching repository %s to %s %s", repo_id, kind.value, ref)
        git.checkout(working_copy, target)

        self._registry.update(updated)
        log_info(logger, "Repository %s now tracks %s", repo_id, updated.image_tag)
        return updated

    # ------------------------------------------------------------------
    # Deploy
    # ------------------------------------------------------------------

    def deploy(self, repo_id: str) -> PublishResult:
        """Sync, build and publish one repository.

        ``last_updated`` is refreshed after the sync and again once the
        service is published.
        """
        synced = self.sync(repo_id).record
        result = self._publish_engine.publish(synced)
        self._registry.update(synced.touched(self._clock()))
        log_info(
            logger,
            "Repository %s deployed: service %s %s",
            repo_id,
            result.service_name,
            result.action.value,
        )
        return result

    def deploy_all(self) -> BatchReport:
        """Deploy every registered repository in id order."""
        return self._run_batch("deploy", self.deploy)

    # ------------------------------------------------------------------
    # Remove, list and logs
    # ------------------------------------------------------------------

    def remove(self, repo_id: str) -> None:
        """Tear down the service, delete the working copy, then the record.

        A failing service teardown is logged and removal continues; the
        service may never have been deployed.

        Raises
        ------
        NotFoundError
            If ``repo_id`` is not registered.
        DployerError
            If the working copy cannot be deleted; the record is kept.

        """
        record = self._registry.get(repo_id)

        swarm = DockerSwarm(self._executor, repo_id=repo_id)
        if swarm.remove_service(record.service_name):
            log_info(logger, "Service %s removed", record.service_name)
        else:
            log_warning(
                logger,
                "Failed to remove service %s for repository %s; continuing",
                record.service_name,
                repo_id,
            )

        working_copy = record.working_copy
        if working_copy.exists():
            try:
                shutil.rmtree(working_copy)
            except OSError as exc:
                msg = f"Failed to delete working copy {working_copy}: {exc}"
                raise DployerError(
                    msg, repo_id=repo_id, step="remove-working-copy"
                ) from exc
            log_info(logger, "Deleted working copy %s", working_copy)
        else:
            log_warning(logger, "Working copy %s already absent", working_copy)

        self._registry.delete(repo_id)
        log_info(logger, "Repository %s removed", repo_id)

    def list_repositories(self) -> list[RepositoryRecord]:
        """Return every record ordered by id."""
        return self._registry.list_all()

    def logs(self, repo_id: str, *, follow: bool = False) -> None:
        """Stream the service logs of ``repo_id`` to the terminal."""
        record = self._registry.get(repo_id)
        DockerSwarm(self._executor, repo_id=repo_id).stream_logs(
            record.service_name, follow=follow
        )

    # ------------------------------------------------------------------
    # Batches
    # ------------------------------------------------------------------

    def _run_batch(
        self, operation: str, action: cabc.Callable[[str], object]
    ) -> BatchReport:
        report = BatchReport()
        ids = [record.id for record in self._registry.list_all()]
        policy = self._config.batch_policy

        for index, repo_id in enumerate(ids):
            try:
                action(repo_id)
            except DployerError as exc:
                report.failed[repo_id] = exc
                log_error(logger, "%s failed: %s", operation.capitalize(), exc)
                if policy is BatchPolicy.STOP:
                    report.skipped.extend(ids[index + 1 :])
                    break
            else:
                report.succeeded.append(repo_id)

        if report.skipped:
            log_warning(
                logger,
                "%s stopped after a failure; skipped: %s",
                operation.capitalize(),
                ", ".join(report.skipped),
            )
        return report


__all__ = ["BatchReport", "Clock", "LifecycleOrchestrator", "validate_port_mapping"]
