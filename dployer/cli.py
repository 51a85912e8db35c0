"""Command-line interface for dployer.

Usage:
    dployer register blog https://git.example.com/blog.git blog \\
        --image-prefix acme/blog --port 8080:80
    dployer list
    dployer sync [ID]
    dployer switch blog v1.0
    dployer deploy [ID]
    dployer remove blog
    dployer logs blog --follow
    dployer check

Environment variables:
    DPLOYER_CONFIG_DIR        - Configuration directory (default: ~/.config/dployer)
    DPLOYER_REPOSITORIES_DIR  - Managed working copies root
    DPLOYER_RECIPES_DIR       - Recipe bundles root
    DPLOYER_DATABASE_URL      - Registry database URL
    DPLOYER_BATCH_POLICY      - ``stop`` or ``continue`` for sync/deploy of all
    DPLOYER_LOG_LEVEL         - Log level (default: INFO)
"""

from __future__ import annotations

import sys
import typing as typ

from cyclopts import App, Parameter

from dployer import __version__
from dployer.config import DployerConfig
from dployer.errors import DployerError
from dployer.executor import ProgressPhase, SubprocessExecutor
from dployer.lifecycle import LifecycleOrchestrator
from dployer.logging import (
    configure_logging,
    get_logger,
    log_error,
    log_warning,
)
from dployer.recipes import DirectoryRecipeProvider
from dployer.registry import SqlRepositoryRegistry
from dployer.validation import check_requirements

if typ.TYPE_CHECKING:
    import collections.abc as cabc

    from dployer.executor import ProgressEvent
    from dployer.lifecycle import BatchReport
    from dployer.registry import RepositoryRecord

logger = get_logger(__name__)

app = App(
    name="dployer",
    help="Clone, sync and deploy PHP repositories as Docker Swarm services",
    version=__version__,
)

_LIST_HEADERS = ("ID", "REF", "IMAGE", "PORTS", "WORKING COPY", "LAST UPDATED")


def _print_progress(event: ProgressEvent) -> None:
    """Echo long-running commands so the operator can follow along."""
    if event.phase is ProgressPhase.STARTED and not event.command.stream:
        print(f"  $ {event.command.display}", file=sys.stderr)


def _load_config() -> DployerConfig:
    config = DployerConfig.from_env()
    normalized_level, invalid_level = configure_logging(config.log_level)
    if invalid_level:
        log_warning(
            logger,
            "Invalid DPLOYER_LOG_LEVEL %r, falling back to %s",
            config.log_level,
            normalized_level,
        )
    config.ensure_directories()
    return config


def _orchestrator(config: DployerConfig) -> LifecycleOrchestrator:
    executor = SubprocessExecutor(progress=_print_progress)
    return LifecycleOrchestrator(
        SqlRepositoryRegistry.from_url(config.database_url),
        executor,
        DirectoryRecipeProvider(config.recipes_dir),
        config,
    )


def _run(action: cabc.Callable[[LifecycleOrchestrator], int]) -> int:
    """Build the orchestrator, run ``action`` and map errors to exit 1."""
    try:
        config = _load_config()
        return action(_orchestrator(config))
    except DployerError as exc:
        log_error(logger, "%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1


def _report_batch(operation: str, report: BatchReport) -> int:
    for repo_id in report.succeeded:
        print(f"{operation} {repo_id}: ok")
    for repo_id, error in report.failed.items():
        print(f"{operation} {repo_id}: failed ({error})")
    for repo_id in report.skipped:
        print(f"{operation} {repo_id}: skipped")
    if not (report.succeeded or report.failed):
        print("No repositories registered.")
    return 0 if report.ok else 1


def _format_table(records: cabc.Sequence[RepositoryRecord]) -> list[str]:
    rows = [
        (
            record.id,
            record.ref,
            record.image_tag,
            record.publish_port_mapping,
            record.working_copy_path,
            record.last_updated.strftime("%Y-%m-%d %H:%M:%S")
            if record.last_updated
            else "-",
        )
        for record in records
    ]
    table = [_LIST_HEADERS, *rows]
    widths = [max(len(cell) for cell in column) for column in zip(*table, strict=True)]
    return [
        "  ".join(
            cell.ljust(width) for cell, width in zip(row, widths, strict=True)
        ).rstrip()
        for row in table
    ]


@app.command
def register(  # noqa: PLR0913
    repo_id: str,
    source_url: str,
    destination: str,
    *,
    image_prefix: str,
    port: str,
    ref: str = "main",
) -> int:
    """Clone a repository and start tracking it.

    Args:
        repo_id: Unique id for the repository.
        source_url: Git remote to clone.
        destination: Working copy path relative to the repositories root.
        image_prefix: Image name without a tag, such as acme/blog.
        port: Port publication as host:container.
        ref: Branch or tag to clone.

    Returns:
        Exit code (0 for success, non-zero for failure).

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        record = orchestrator.register(
            repo_id,
            source_url,
            destination,
            image_prefix=image_prefix,
            port_mapping=port,
            ref=ref,
        )
        print(f"Registered {record.id} as {record.image_tag}")
        return 0

    return _run(action)


@app.command(name="list")
def list_repositories() -> int:
    """List tracked repositories."""

    def action(orchestrator: LifecycleOrchestrator) -> int:
        records = orchestrator.list_repositories()
        if not records:
            print("No repositories registered.")
            return 0
        for line in _format_table(records):
            print(line)
        return 0

    return _run(action)


@app.command
def sync(repo_id: str | None = None) -> int:
    """Update one repository, or every repository when no id is given.

    Args:
        repo_id: Repository to sync; omit to sync all.

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        if repo_id is None:
            return _report_batch("sync", orchestrator.sync_all())
        result = orchestrator.sync(repo_id)
        print(f"sync {repo_id}: {result.final_state.value} at {result.record.ref}")
        return 0

    return _run(action)


@app.command
def switch(repo_id: str, ref: str) -> int:
    """Check out another branch or tag and track it from now on.

    Args:
        repo_id: Repository to switch.
        ref: Branch or tag to check out.

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        record = orchestrator.switch_ref(repo_id, ref)
        print(f"{record.id} now tracks {record.ref} ({record.image_tag})")
        return 0

    return _run(action)


@app.command
def deploy(
    repo_id: str | None = None,
    *,
    skip_checks: typ.Annotated[
        bool, Parameter(env_var="DPLOYER_SKIP_CHECKS")
    ] = False,
) -> int:
    """Sync, build and publish one repository, or all when no id is given.

    Args:
        repo_id: Repository to deploy; omit to deploy all.
        skip_checks: Skip the git/docker/Swarm preflight checks.

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        if not skip_checks:
            check_requirements(SubprocessExecutor())
        if repo_id is None:
            return _report_batch("deploy", orchestrator.deploy_all())
        result = orchestrator.deploy(repo_id)
        print(f"deploy {repo_id}: service {result.service_name} {result.action.value}")
        return 0

    return _run(action)


@app.command
def remove(repo_id: str) -> int:
    """Remove a repository's service, working copy and record.

    Args:
        repo_id: Repository to remove.

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        orchestrator.remove(repo_id)
        print(f"Removed {repo_id}")
        return 0

    return _run(action)


@app.command
def logs(repo_id: str, *, follow: bool = False) -> int:
    """Show the service logs of a repository.

    Args:
        repo_id: Repository whose service logs to show.
        follow: Keep streaming new log lines.

    """

    def action(orchestrator: LifecycleOrchestrator) -> int:
        orchestrator.logs(repo_id, follow=follow)
        return 0

    return _run(action)


@app.command
def check() -> int:
    """Verify git and docker are installed and Swarm is usable."""
    try:
        _load_config()
        ready = check_requirements(SubprocessExecutor(progress=_print_progress))
    except DployerError as exc:
        log_error(logger, "%s", exc)
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    print("All requirements satisfied." if ready else "Docker Swarm is not active.")
    return 0 if ready else 1


def main() -> int:
    """Entry point for the dployer console script."""
    return app()


if __name__ == "__main__":
    sys.exit(main())
