"""
Unit tests for workspace bootstrapping.

Helper processes (npm, npx) are mocked; manifests, generated configuration
and auth state handling run against temporary workspaces.
"""

import json
import sys
from unittest.mock import AsyncMock, patch

import pytest

from workbench.core.exceptions import ConfigGenerationError, CredentialsError
from workbench.execution.models import RunMode
from workbench.workspace.bootstrap import (
    CLOUD_DEPENDENCIES,
    REQUIRED_DEPENDENCIES,
    WorkspaceBootstrapper,
    has_chromium,
)
from workbench.workspace.layout import WorkspaceLayout


@pytest.fixture
def bootstrapper(config):
    return WorkspaceBootstrapper(config)


@pytest.fixture
def empty_browser_cache(tmp_path):
    cache = tmp_path / "browser-cache"
    with patch("workbench.workspace.bootstrap.default_browsers_cache", return_value=cache):
        yield cache


class TestManifest:
    """Test cases for dependency manifest handling."""

    def test_manifest_created(self, bootstrapper, layout):
        """Test a missing package.json is created with the required packages."""
        assert bootstrapper.ensure_manifest(layout, RunMode.LOCAL) is True

        manifest = json.loads((layout.root / "package.json").read_text())
        assert manifest["private"] is True
        assert manifest["dependencies"] == REQUIRED_DEPENDENCIES
        assert bootstrapper.ensure_manifest(layout, RunMode.LOCAL) is False

    def test_cloud_dependencies_added(self, bootstrapper, layout):
        """Test cloud mode adds the cloud SDK to an existing manifest."""
        bootstrapper.ensure_manifest(layout, RunMode.LOCAL)

        assert bootstrapper.ensure_manifest(layout, RunMode.CLOUD) is True

        dependencies = json.loads((layout.root / "package.json").read_text())["dependencies"]
        for name in CLOUD_DEPENDENCIES:
            assert name in dependencies

    def test_existing_entries_respected(self, bootstrapper, layout):
        """Test packages in devDependencies count and pinned versions stay."""
        (layout.root / "package.json").write_text(
            json.dumps(
                {
                    "name": "custom",
                    "dependencies": {"@playwright/test": "1.45.0"},
                    "devDependencies": {"dotenv": "^16.4.0"},
                }
            )
        )

        bootstrapper.ensure_manifest(layout, RunMode.LOCAL)

        manifest = json.loads((layout.root / "package.json").read_text())
        assert manifest["name"] == "custom"
        assert manifest["dependencies"]["@playwright/test"] == "1.45.0"
        assert "dotenv" not in manifest["dependencies"]
        assert "allure-playwright" in manifest["dependencies"]

    def test_unreadable_manifest_left_alone(self, bootstrapper, layout):
        """Test a broken package.json is not overwritten."""
        (layout.root / "package.json").write_text("{broken")

        assert bootstrapper.ensure_manifest(layout, RunMode.LOCAL) is True
        assert (layout.root / "package.json").read_text() == "{broken"


class TestExecutionEnvironment:
    """Test cases for ensure_execution_environment."""

    @pytest.mark.asyncio
    async def test_fresh_workspace_installs_everything(self, bootstrapper, layout, empty_browser_cache):
        """Test a fresh workspace gets dependencies, browsers and config."""
        with patch.object(bootstrapper, "_run", AsyncMock(return_value=0)) as run:
            await bootstrapper.ensure_execution_environment(layout, RunMode.LOCAL)

        labels = [call.args[2] for call in run.call_args_list]
        assert labels == ["npm install", "playwright install"]
        assert layout.config_path.exists()
        assert layout.reporter_path.exists()

    @pytest.mark.asyncio
    async def test_prepared_workspace_skips_installs(self, bootstrapper, layout, empty_browser_cache):
        """Test installed packages and cached browsers are not reinstalled."""
        bootstrapper.ensure_manifest(layout, RunMode.LOCAL)
        (layout.root / "node_modules" / "@playwright" / "test").mkdir(parents=True)
        (empty_browser_cache / "chromium-1105").mkdir(parents=True)

        with patch.object(bootstrapper, "_run", AsyncMock(return_value=0)) as run:
            await bootstrapper.ensure_execution_environment(layout, RunMode.LOCAL)

        run.assert_not_called()
        assert layout.config_path.exists()

    @pytest.mark.asyncio
    async def test_cloud_mode_skips_browsers(self, bootstrapper, layout, empty_browser_cache):
        """Test cloud runs do not install local browsers."""
        with patch.object(bootstrapper, "_run", AsyncMock(return_value=0)) as run:
            await bootstrapper.ensure_execution_environment(layout, RunMode.CLOUD)

        assert [call.args[2] for call in run.call_args_list] == ["npm install"]

    @pytest.mark.asyncio
    async def test_install_failures_tolerated(self, bootstrapper, layout, empty_browser_cache):
        """Test failed installs do not stop configuration generation."""
        with patch.object(bootstrapper, "_run", AsyncMock(return_value=None)):
            await bootstrapper.ensure_execution_environment(layout, RunMode.LOCAL)

        assert layout.config_path.exists()

    @pytest.mark.asyncio
    async def test_run_helper_reports_exit_codes(self, bootstrapper, tmp_path):
        """Test the helper runner returns exit codes and None when it cannot start."""
        assert await bootstrapper._run([sys.executable, "-c", "raise SystemExit(2)"], tmp_path, "exit-check") == 2
        assert await bootstrapper._run([str(tmp_path / "missing")], tmp_path, "exit-check") is None

    def test_has_chromium(self, tmp_path):
        """Test browser cache detection."""
        assert has_chromium(None) is False
        assert has_chromium(tmp_path) is False
        (tmp_path / "chromium_headless_shell-1105").mkdir()
        assert has_chromium(tmp_path) is True


class TestConfiguration:
    """Test cases for generated configuration."""

    def test_config_for_d365_workspace(self, bootstrapper, layout):
        """Test the generated config wires run ids, reporters and auth state."""
        bootstrapper.write_configuration(layout, RunMode.LOCAL)

        content = layout.config_path.read_text()
        assert "const runId = process.env.WORKBENCH_RUN_ID || 'manual';" in content
        assert "outputDir: `test-results/${runId}`" in content
        assert "resultsDir: `allure-results/${runId}`" in content
        assert "['./.workbench/forensics-reporter.js']" in content
        assert 'process.env.D365_URL || "https://d365.example.com/"' in content
        assert 'storageState: process.env.STORAGE_STATE_PATH || "storage_state/d365.json"' in content
        assert "trace: 'on'" in content
        assert "headless: true" in content

    def test_config_for_web_demo_workspace(self, config, tmp_path):
        """Test non-d365 workspaces use BASE_URL and no auth state."""
        (tmp_path / "workspace.json").write_text(json.dumps({"type": "web-demo"}))
        layout = WorkspaceLayout(tmp_path)

        WorkspaceBootstrapper(config).write_configuration(layout, "local")

        content = layout.config_path.read_text()
        assert f"process.env.BASE_URL || {json.dumps(config.web_demo_base_url)}" in content
        assert "storageState" not in content

    def test_reporter_shim(self, bootstrapper, layout):
        """Test the reporter hands payloads to the forensics module."""
        bootstrapper.write_configuration(layout, RunMode.LOCAL)

        content = layout.reporter_path.read_text()
        assert "workbench.analysis.forensics" in content
        assert json.dumps(sys.executable) in content
        assert "module.exports = ForensicsReporter;" in content

    def test_write_failure_raises(self, bootstrapper, layout):
        """Test write errors surface as ConfigGenerationError."""
        with patch("pathlib.Path.write_text", side_effect=OSError("read-only")):
            with pytest.raises(ConfigGenerationError) as exc_info:
                bootstrapper.write_configuration(layout, RunMode.LOCAL)

        assert exc_info.value.context["config_path"] == str(layout.config_path)


class TestAuthState:
    """Test cases for auth snapshot and credentials."""

    def test_snapshot_copied_when_missing(self, bootstrapper, config, layout):
        """Test the persisted snapshot is copied into the workspace."""
        config.auth_state_path.parent.mkdir(parents=True)
        config.auth_state_path.write_text('{"cookies": []}')

        assert bootstrapper.ensure_auth_state(layout, RunMode.LOCAL) is None
        assert layout.storage_state_path.read_text() == '{"cookies": []}'

    def test_existing_workspace_snapshot_kept(self, bootstrapper, config, layout):
        """Test an existing workspace snapshot is not overwritten."""
        config.auth_state_path.parent.mkdir(parents=True)
        config.auth_state_path.write_text("new")
        layout.storage_state_path.parent.mkdir(parents=True)
        layout.storage_state_path.write_text("existing")

        bootstrapper.ensure_auth_state(layout, RunMode.LOCAL)

        assert layout.storage_state_path.read_text() == "existing"

    def test_missing_snapshot_tolerated(self, bootstrapper, layout):
        """Test a missing snapshot only warns."""
        assert bootstrapper.ensure_auth_state(layout, RunMode.LOCAL) is None
        assert not layout.storage_state_path.exists()

    def test_cloud_credentials_from_file(self, bootstrapper, config, layout):
        """Test cloud runs read credentials from the settings file."""
        config.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        config.credentials_path.write_text(
            json.dumps({"browserstack": {"username": "user", "accessKey": "key"}})
        )

        credentials = bootstrapper.ensure_auth_state(layout, RunMode.CLOUD)

        assert credentials.username == "user"
        assert credentials.access_key == "key"

    def test_cloud_credentials_from_config(self, config, layout):
        """Test credentials configured on Config win over the file."""
        config.cloud_username = "env-user"
        config.cloud_access_key = "env-key"

        credentials = WorkspaceBootstrapper(config).ensure_auth_state(layout, RunMode.CLOUD)

        assert credentials.username == "env-user"

    def test_cloud_without_credentials(self, bootstrapper, config, layout):
        """Test cloud runs without credentials raise CredentialsError."""
        config.credentials_path.parent.mkdir(parents=True, exist_ok=True)
        config.credentials_path.write_text(json.dumps({"browserstack": {"username": "user"}}))

        with pytest.raises(CredentialsError) as exc_info:
            bootstrapper.ensure_auth_state(layout, RunMode.CLOUD)

        assert exc_info.value.error_code == "CREDENTIALS_MISSING"
