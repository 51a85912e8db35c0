"""Shared fixtures for unit and feature tests."""

from __future__ import annotations

import typing as typ

import pytest

from dployer.config import DployerConfig
from dployer.lifecycle import LifecycleOrchestrator
from dployer.recipes import (
    DEFAULT_DOCKERFILE,
    MODERN_PHP_DOCKERFILE,
    DirectoryRecipeProvider,
)
from dployer.registry import SqlRepositoryRegistry
from tests.fakes import (
    BUILD_IDENTITY,
    FakeSwarm,
    InMemoryRegistry,
    ScriptedExecutor,
    StepClock,
)

if typ.TYPE_CHECKING:
    from pathlib import Path


@pytest.fixture
def executor() -> ScriptedExecutor:
    """Return an executor that records commands and succeeds by default."""
    return ScriptedExecutor()


@pytest.fixture
def swarm(executor: ScriptedExecutor) -> FakeSwarm:
    """Return a fake Swarm wired into ``executor``."""
    fake = FakeSwarm()
    fake.install(executor)
    return fake


@pytest.fixture
def registry() -> InMemoryRegistry:
    """Return an empty in-memory registry."""
    return InMemoryRegistry()


@pytest.fixture
def sql_registry(tmp_path: Path) -> SqlRepositoryRegistry:
    """Return a SQLite-backed registry in a temporary directory."""
    return SqlRepositoryRegistry.from_url(f"sqlite:///{tmp_path / 'registry.db'}")


@pytest.fixture
def config(tmp_path: Path) -> DployerConfig:
    """Return a configuration rooted in a temporary directory."""
    cfg = DployerConfig.for_directory(tmp_path / "config")
    cfg.ensure_directories()
    return cfg


@pytest.fixture
def recipes(config: DployerConfig) -> DirectoryRecipeProvider:
    """Create laravel and static-php bundles under the recipes directory."""
    laravel = config.recipes_dir / "laravel"
    laravel.mkdir(parents=True)
    (laravel / DEFAULT_DOCKERFILE).write_text("FROM php:8.1-fpm\n", encoding="utf-8")
    (laravel / MODERN_PHP_DOCKERFILE).write_text(
        "FROM php:8.2-fpm\n", encoding="utf-8"
    )
    (laravel / "nginx.conf").write_text("server {}\n", encoding="utf-8")

    static_php = config.recipes_dir / "static-php"
    static_php.mkdir(parents=True)
    (static_php / DEFAULT_DOCKERFILE).write_text(
        "FROM php:8.1-apache\n", encoding="utf-8"
    )
    return DirectoryRecipeProvider(config.recipes_dir)


@pytest.fixture
def clock() -> StepClock:
    """Return a clock that advances one minute per reading."""
    return StepClock()


@pytest.fixture
def orchestrator(
    registry: InMemoryRegistry,
    executor: ScriptedExecutor,
    recipes: DirectoryRecipeProvider,
    config: DployerConfig,
    clock: StepClock,
) -> LifecycleOrchestrator:
    """Return an orchestrator over the in-memory registry and fake executor."""
    return LifecycleOrchestrator(
        registry,
        executor,
        recipes,
        config,
        identity=BUILD_IDENTITY,
        clock=clock,
    )
