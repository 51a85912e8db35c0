"""Shared fixtures for BDD feature tests."""

from __future__ import annotations

import pytest

from tests.fakes import ScriptedExecutor, clone_writes


@pytest.fixture
def executor() -> ScriptedExecutor:
    """Return an executor whose clones produce a Laravel working copy."""
    scripted = ScriptedExecutor()
    scripted.handle("git", "clone", handler=clone_writes("artisan"))
    return scripted
