"""Unit tests for LifecycleOrchestrator."""

from __future__ import annotations

import dataclasses
import datetime as dt
import shutil
import typing as typ
from pathlib import Path

import pytest

from dployer.config import BatchPolicy
from dployer.errors import (
    ConflictError,
    DployerError,
    DuplicateRepositoryError,
    ExternalToolError,
    NotFoundError,
    ValidationError,
)
from dployer.executor import CommandOutcome
from dployer.lifecycle import LifecycleOrchestrator, validate_port_mapping
from dployer.publish import PublishAction
from tests.fakes import BUILD_IDENTITY, clone_writes

if typ.TYPE_CHECKING:
    from dployer.config import DployerConfig
    from dployer.executor import Command
    from dployer.recipes import DirectoryRecipeProvider
    from dployer.registry.models import RepositoryRecord
    from tests.fakes import FakeSwarm, InMemoryRegistry, ScriptedExecutor, StepClock


def _register(
    orchestrator: LifecycleOrchestrator,
    repo_id: str = "blog",
    *,
    ref: str = "main",
    destination: str | None = None,
) -> RepositoryRecord:
    return orchestrator.register(
        repo_id,
        f"https://git.example.com/{repo_id}.git",
        destination or repo_id,
        image_prefix=f"acme/{repo_id}",
        port_mapping="8080:80",
        ref=ref,
    )


@pytest.fixture(autouse=True)
def laravel_clone(executor: ScriptedExecutor) -> None:
    """Make ``git clone`` produce a Laravel working copy."""
    executor.handle("git", "clone", handler=clone_writes("artisan"))


class TestRegister:
    """Tests for register."""

    def test_inserts_record_with_derived_image_tag(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        config: DployerConfig,
    ) -> None:
        """Registering clones the ref and stores the derived image tag."""
        record = _register(orchestrator)

        assert registry.get("blog") == record
        assert record.image_tag == "acme/blog:latest"
        assert record.last_updated is not None
        expected_path = (config.repositories_dir / "blog").resolve()
        assert record.working_copy == expected_path
        assert executor.calls("git", "clone") == [
            (
                "git",
                "clone",
                "-b",
                "main",
                "https://git.example.com/blog.git",
                str(expected_path),
            )
        ]

    def test_duplicate_id_is_rejected_before_cloning(
        self,
        orchestrator: LifecycleOrchestrator,
        executor: ScriptedExecutor,
    ) -> None:
        """A second registration under the same id clones nothing."""
        _register(orchestrator)
        executor.reset()

        with pytest.raises(DuplicateRepositoryError):
            _register(orchestrator, destination="blog-again")

        assert executor.commands == []

    def test_existing_destination_is_moved_aside(
        self,
        orchestrator: LifecycleOrchestrator,
        config: DployerConfig,
    ) -> None:
        """A pre-existing directory is renamed with a timestamp, not deleted."""
        stale = config.repositories_dir / "blog"
        stale.mkdir(parents=True)
        (stale / "notes.txt").write_text("keep me", encoding="utf-8")

        _register(orchestrator)

        backups = sorted(config.repositories_dir.glob("blog_backup_*"))
        assert len(backups) == 1, "Expected exactly one backup directory"
        assert backups[0].name == "blog_backup_20240501_120000"
        assert (backups[0] / "notes.txt").read_text(encoding="utf-8") == "keep me"
        assert (stale / "artisan").exists(), "Expected a fresh clone in place"

    @pytest.mark.parametrize(
        "destination",
        [
            pytest.param("/srv/elsewhere", id="absolute"),
            pytest.param("../escape", id="parent"),
            pytest.param(".", id="root-itself"),
            pytest.param("  ", id="blank"),
        ],
    )
    def test_destination_must_stay_inside_root(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        destination: str,
    ) -> None:
        """Destinations outside the repositories root are refused."""
        with pytest.raises(ValidationError):
            _register(orchestrator, destination=destination)

        assert registry.records == {}
        assert executor.commands == []

    @pytest.mark.parametrize(
        "field",
        ["repo_id", "source_url", "image_prefix"],
    )
    def test_blank_inputs_are_rejected(
        self, orchestrator: LifecycleOrchestrator, field: str
    ) -> None:
        """Required text inputs must not be blank."""
        arguments = {
            "repo_id": "blog",
            "source_url": "https://git.example.com/blog.git",
            "destination": "blog",
            "image_prefix": "acme/blog",
            "port_mapping": "8080:80",
        }
        arguments[field] = " "

        with pytest.raises(ValidationError, match="must not be empty"):
            orchestrator.register(**arguments)

    def test_tagged_image_prefix_is_rejected(
        self, orchestrator: LifecycleOrchestrator
    ) -> None:
        """The prefix must not already carry a tag."""
        with pytest.raises(ValidationError, match="must not carry a tag"):
            orchestrator.register(
                "blog",
                "https://git.example.com/blog.git",
                "blog",
                image_prefix="acme/blog:v1",
                port_mapping="8080:80",
            )

    def test_failed_clone_inserts_nothing(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
    ) -> None:
        """A clone failure leaves the registry unchanged."""
        executor.respond("git", "clone", exit_code=128)

        with pytest.raises(ExternalToolError) as excinfo:
            _register(orchestrator)

        assert excinfo.value.step == "clone"
        assert registry.records == {}

    def test_unusable_repositories_root_is_reported(  # noqa: PLR0913
        self,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        recipes: DirectoryRecipeProvider,
        config: DployerConfig,
        clock: StepClock,
        tmp_path: Path,
    ) -> None:
        """A root that cannot be created fails with the register step."""
        blocker = tmp_path / "not-a-directory"
        blocker.write_text("", encoding="utf-8")
        orchestrator = LifecycleOrchestrator(
            registry,
            executor,
            recipes,
            dataclasses.replace(config, repositories_dir=blocker / "repositories"),
            identity=BUILD_IDENTITY,
            clock=clock,
        )

        with pytest.raises(DployerError) as excinfo:
            _register(orchestrator)

        assert excinfo.value.repo_id == "blog"
        assert excinfo.value.step == "register"
        assert executor.calls("git", "clone") == []



class TestValidatePortMapping:
    """Tests for validate_port_mapping."""

    @pytest.mark.parametrize("mapping", ["8080:80", "1:65535", " 443:8443 "])
    def test_accepts_host_container_pairs(self, mapping: str) -> None:
        """Numeric host:container pairs are accepted."""
        assert validate_port_mapping(mapping) == mapping.strip()

    @pytest.mark.parametrize(
        "mapping", ["8080", "8080:", ":80", "http:80", "0:80", "70000:80", "1:2:3"]
    )
    def test_rejects_malformed_pairs(self, mapping: str) -> None:
        """Anything else is a validation error."""
        with pytest.raises(ValidationError):
            validate_port_mapping(mapping)


class TestSync:
    """Tests for sync and sync_all."""

    def test_successful_sync_refreshes_last_updated(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
    ) -> None:
        """The stored record is stamped after a clean sync."""
        before = _register(orchestrator)

        orchestrator.sync("blog")

        after = registry.get("blog")
        assert after.last_updated is not None
        assert before.last_updated is not None
        assert after.last_updated > before.last_updated

    def test_conflict_leaves_record_untouched(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
    ) -> None:
        """A stash conflict keeps last_updated and never drops the stash."""
        before = _register(orchestrator)
        executor.respond("git", "diff", exit_code=1)
        executor.respond("git", "diff", exit_code=0)
        executor.respond("git", "stash", "pop", exit_code=1)

        with pytest.raises(ConflictError):
            orchestrator.sync("blog")

        assert registry.get("blog") == before
        assert executor.calls("git", "stash", "drop") == []

    def test_unknown_id(self, orchestrator: LifecycleOrchestrator) -> None:
        """Syncing an unregistered id raises NotFoundError."""
        with pytest.raises(NotFoundError):
            orchestrator.sync("ghost")


class TestBatchPolicies:
    """Tests for stop and continue batch handling."""

    def _orchestrator(  # noqa: PLR0913
        self,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        recipes: DirectoryRecipeProvider,
        config: DployerConfig,
        clock: StepClock,
        policy: BatchPolicy,
    ) -> LifecycleOrchestrator:
        return LifecycleOrchestrator(
            registry,
            executor,
            recipes,
            dataclasses.replace(config, batch_policy=policy),
            identity=BUILD_IDENTITY,
            clock=clock,
        )

    @pytest.mark.parametrize(
        ("policy", "expected_succeeded", "expected_skipped"),
        [
            pytest.param(BatchPolicy.STOP, ["alpha"], ["gamma"], id="stop"),
            pytest.param(
                BatchPolicy.CONTINUE, ["alpha", "gamma"], [], id="continue"
            ),
        ],
    )
    def test_sync_all_applies_policy(  # noqa: PLR0913
        self,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        recipes: DirectoryRecipeProvider,
        config: DployerConfig,
        clock: StepClock,
        policy: BatchPolicy,
        expected_succeeded: list[str],
        expected_skipped: list[str],
    ) -> None:
        """A failing repository stops or is skipped according to policy."""
        orchestrator = self._orchestrator(
            registry, executor, recipes, config, clock, policy
        )
        for repo_id in ("gamma", "beta", "alpha"):
            _register(orchestrator, repo_id)
        beta = registry.get("beta")

        def failing_rebase(command: Command) -> CommandOutcome:
            return CommandOutcome(
                exit_code=1 if command.cwd == beta.working_copy else 0
            )

        executor.handle("git", "rebase", handler=failing_rebase)

        report = orchestrator.sync_all()

        assert report.succeeded == expected_succeeded
        assert list(report.failed) == ["beta"]
        assert isinstance(report.failed["beta"], DployerError)
        assert report.failed["beta"].step == "rebase"
        assert report.skipped == expected_skipped
        assert report.ok is False

    def test_deploy_all_continues_past_staging_failure(  # noqa: PLR0913
        self,
        monkeypatch: pytest.MonkeyPatch,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        recipes: DirectoryRecipeProvider,
        config: DployerConfig,
        clock: StepClock,
        swarm: FakeSwarm,
    ) -> None:
        """A filesystem error while staging one repository is reported, not fatal."""
        orchestrator = self._orchestrator(
            registry, executor, recipes, config, clock, BatchPolicy.CONTINUE
        )
        for repo_id in ("alpha", "beta", "gamma"):
            _register(orchestrator, repo_id)
        beta_copy = registry.get("beta").working_copy.resolve()
        real_copytree = shutil.copytree

        def copytree(src: Path, dst: Path, **kwargs: object) -> object:
            if Path(dst).parent == beta_copy:
                raise shutil.Error([(str(src), str(dst), "No space left on device")])
            return real_copytree(src, dst, **kwargs)

        monkeypatch.setattr("shutil.copytree", copytree)

        report = orchestrator.deploy_all()

        assert report.succeeded == ["alpha", "gamma"]
        assert list(report.failed) == ["beta"]
        assert report.failed["beta"].step == "stage-build-context"
        assert swarm.services == {"alpha_service", "gamma_service"}



class TestSwitchRef:
    """Tests for switch_ref."""

    def test_switch_to_tag_checks_out_tag_namespace(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
    ) -> None:
        """Tags are checked out as tags/<ref> and the image tag follows."""
        _register(orchestrator)
        executor.reset()

        record = orchestrator.switch_ref("blog", "v1.0")

        assert executor.argvs == [
            ("git", "fetch", "--all"),
            ("git", "checkout", "tags/v1.0"),
        ]
        assert record.ref == "v1.0"
        assert record.image_tag == "acme/blog:v1.0"
        assert registry.get("blog") == record

    def test_switch_to_branch(
        self, orchestrator: LifecycleOrchestrator, executor: ScriptedExecutor
    ) -> None:
        """Branches are checked out by name."""
        _register(orchestrator, ref="v1.0")

        record = orchestrator.switch_ref("blog", "dev")

        assert executor.argvs[-1] == ("git", "checkout", "dev")
        assert record.image_tag == "acme/blog:dev"

    def test_slashed_branch_can_switch_back(
        self, orchestrator: LifecycleOrchestrator, registry: InMemoryRegistry
    ) -> None:
        """A branch name containing a slash keeps the image tag recomputable."""
        registered = _register(orchestrator, ref="feature/login")
        assert registered.image_tag == "acme/blog:feature/login"

        record = orchestrator.switch_ref("blog", "main")

        assert record.ref == "main"
        assert record.image_tag == "acme/blog:latest"
        assert registry.get("blog") == record


    def test_failed_checkout_persists_nothing(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
    ) -> None:
        """The stored ref only changes after a successful checkout."""
        before = _register(orchestrator)
        executor.respond("git", "checkout", exit_code=1)

        with pytest.raises(ExternalToolError):
            orchestrator.switch_ref("blog", "v9.9")

        assert registry.get("blog") == before


class TestDeploy:
    """Tests for deploy and deploy_all."""

    def test_deploy_twice_creates_once_then_updates(
        self,
        orchestrator: LifecycleOrchestrator,
        executor: ScriptedExecutor,
        swarm: FakeSwarm,
    ) -> None:
        """Repeated deploys never create a second service."""
        _register(orchestrator)

        first = orchestrator.deploy("blog")
        second = orchestrator.deploy("blog")

        assert first.action is PublishAction.CREATED
        assert second.action is PublishAction.UPDATED
        assert len(executor.calls("docker", "service", "create")) == 1
        assert len(executor.calls("docker", "service", "update")) == 1
        assert swarm.services == {"blog_service"}

    def test_deploy_syncs_before_building(
        self,
        orchestrator: LifecycleOrchestrator,
        executor: ScriptedExecutor,
        swarm: FakeSwarm,
    ) -> None:
        """The working copy is pulled before the image is built."""
        _register(orchestrator)
        executor.reset()

        orchestrator.deploy("blog")

        programs = [argv[:2] for argv in executor.argvs]
        assert programs.index(("git", "pull")) < programs.index(("docker", "build"))
        assert swarm.services == {"blog_service"}

    def test_failed_publish_keeps_only_sync_stamp(  # noqa: PLR0913
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
        swarm: FakeSwarm,
        clock: StepClock,
    ) -> None:
        """A build failure leaves the sync timestamp as the last stamp."""
        _register(orchestrator)
        executor.respond("docker", "build", exit_code=1)

        with pytest.raises(ExternalToolError):
            orchestrator.deploy("blog")

        last_reading = clock.now - dt.timedelta(minutes=1)
        assert registry.get("blog").last_updated == last_reading, (
            "Only the sync should have stamped the record"
        )
        assert swarm.services == set()

    def test_deploy_all_reports_each_repository(
        self,
        orchestrator: LifecycleOrchestrator,
        swarm: FakeSwarm,
    ) -> None:
        """Every repository is deployed in id order."""
        _register(orchestrator, "blog")
        _register(orchestrator, "alpha")

        report = orchestrator.deploy_all()

        assert report.succeeded == ["alpha", "blog"]
        assert report.ok
        assert swarm.services == {"alpha_service", "blog_service"}


class TestRemove:
    """Tests for remove."""

    def test_teardown_failure_does_not_block_removal(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        executor: ScriptedExecutor,
    ) -> None:
        """A failing service removal still deletes the directory and record."""
        record = _register(orchestrator)
        executor.reset()
        executor.respond("docker", "service", "rm", exit_code=1)

        orchestrator.remove("blog")

        assert executor.argvs == [("docker", "service", "rm", "blog_service")]
        assert not record.working_copy.exists()
        assert registry.records == {}

    def test_removes_running_service(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
        swarm: FakeSwarm,
    ) -> None:
        """A deployed service is torn down first."""
        _register(orchestrator)
        orchestrator.deploy("blog")

        orchestrator.remove("blog")

        assert swarm.services == set()
        assert registry.records == {}

    def test_missing_working_copy_is_tolerated(
        self,
        orchestrator: LifecycleOrchestrator,
        registry: InMemoryRegistry,
    ) -> None:
        """A working copy deleted by hand does not block removal."""
        record = _register(orchestrator)
        shutil.rmtree(record.working_copy)

        orchestrator.remove("blog")

        assert registry.records == {}

    def test_unknown_id(
        self, orchestrator: LifecycleOrchestrator, executor: ScriptedExecutor
    ) -> None:
        """Removing an unregistered id touches nothing."""
        with pytest.raises(NotFoundError):
            orchestrator.remove("ghost")

        assert executor.commands == []


class TestListAndLogs:
    """Tests for list_repositories and logs."""

    def test_list_is_ordered_by_id(self, orchestrator: LifecycleOrchestrator) -> None:
        """Records come back sorted by id."""
        for repo_id in ("zeta", "alpha", "mid"):
            _register(orchestrator, repo_id)

        ids = [record.id for record in orchestrator.list_repositories()]

        assert ids == ["alpha", "mid", "zeta"]

    def test_logs_follow_service(
        self, orchestrator: LifecycleOrchestrator, executor: ScriptedExecutor
    ) -> None:
        """Logs stream from the repository's service."""
        _register(orchestrator)
        executor.reset()

        orchestrator.logs("blog", follow=True)

        assert executor.argvs == [
            ("docker", "service", "logs", "-f", "blog_service")
        ]
