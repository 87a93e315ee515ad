"""
Pytest configuration and shared fixtures for QA Workbench tests.

Provides an isolated application data directory, sample workspaces and a
fake engine launcher that runs a small Python script instead of Playwright.
"""

import json
import logging
import sys
import textwrap
from pathlib import Path
from typing import List, Optional
from unittest.mock import AsyncMock, MagicMock

import pytest

from workbench.core.config import Config
from workbench.execution.runtime import EngineLauncher, LaunchSpec
from workbench.workspace.layout import WorkspaceLayout


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch, tmp_path):
    """Keep every test away from the real home directory and CI settings."""
    home = tmp_path / "app-data"
    monkeypatch.setenv("CI", "true")
    monkeypatch.setenv("QA_WORKBENCH_HOME", str(home))
    for name in (
        "QA_WORKBENCH_LOG_LEVEL",
        "QA_WORKBENCH_LOG_FORMAT",
        "QA_WORKBENCH_RUNTIME_DIR",
        "QA_WORKBENCH_BASE_URL",
        "BROWSERSTACK_USERNAME",
        "BROWSERSTACK_ACCESS_KEY",
        "WORKBENCH_WORKSPACE",
        "WORKBENCH_RUN_ID",
        "GITHUB_ACTIONS",
        "GITLAB_CI",
        "JENKINS_URL",
        "TF_BUILD",
    ):
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setattr("workbench.core.config_manager._config_manager", None)
    return home


@pytest.fixture(autouse=True)
def restore_root_logger():
    """Undo handler changes made by setup_logging."""
    root = logging.getLogger()
    handlers, level = list(root.handlers), root.level
    yield
    for handler in root.handlers:
        if handler not in handlers:
            handler.close()
    root.handlers[:] = handlers
    root.setLevel(level)


@pytest.fixture
def config(isolated_environment):
    """Configuration rooted in the temporary application data directory."""
    return Config()


SAMPLE_SPEC = """
import { test, expect } from '@playwright/test';

test('create sales order', async ({ page }) => {
  await page.goto('/');
  await expect(page.getByRole('button', { name: 'OK' })).toBeVisible();
});
"""


def write_spec(root: Path, identity: str, platform: str = "d365") -> Path:
    """Create ``tests/<platform>/specs/<identity>/<identity>.spec.ts``."""
    spec = root / "tests" / platform / "specs" / identity / f"{identity}.spec.ts"
    spec.parent.mkdir(parents=True, exist_ok=True)
    spec.write_text(SAMPLE_SPEC, encoding="utf-8")
    return spec


@pytest.fixture
def add_spec():
    """Helper creating spec bundles in the current layout."""
    return write_spec

@pytest.fixture
def workspace(tmp_path):
    """A d365 workspace with one spec bundle, ``create-sales-order``."""
    root = tmp_path / "workspace"
    root.mkdir()
    (root / "workspace.json").write_text(
        json.dumps({"type": "d365", "settings": {"baseUrl": "https://d365.example.com/"}}),
        encoding="utf-8",
    )
    write_spec(root, "create-sales-order")
    return root


@pytest.fixture
def layout(workspace):
    return WorkspaceLayout(workspace)


class ScriptLauncher(EngineLauncher):
    """
    Launcher that runs a Python script in place of the test engine.

    The script sees the same environment a real engine would, so it can
    write traces and results under the run-tagged directories.
    """

    def __init__(self, config: Config, script: str, command: Optional[List[str]] = None):
        super().__init__(config)
        self.script = textwrap.dedent(script)
        self.command = command
        self.built: List[LaunchSpec] = []

    def build(self, request, layout, resolved, run_id, credentials=None):
        env = self.base_env(request, layout, run_id)
        command = self.command or [sys.executable, "-c", self.script]
        launch = LaunchSpec(command=command, cwd=layout.root, env=env)
        self.built.append(launch)
        return launch


@pytest.fixture
def script_launcher(config):
    """Factory for launchers running a given script."""

    def factory(script: str = "", command: Optional[List[str]] = None) -> ScriptLauncher:
        return ScriptLauncher(config, script, command)

    return factory


@pytest.fixture
def fake_bootstrapper():
    """Bootstrapper that prepares nothing."""
    bootstrapper = MagicMock()
    bootstrapper.ensure_auth_state = MagicMock(return_value=None)
    bootstrapper.ensure_execution_environment = AsyncMock(return_value=None)
    return bootstrapper


@pytest.fixture
def fake_report_generator():
    """Report generator that never produces a report."""
    generator = MagicMock()
    generator.generate = AsyncMock(return_value=None)
    return generator
