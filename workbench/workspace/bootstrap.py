"""
Workspace bootstrapping.

Makes a workspace runnable: dependency manifest and install, browser
runtime, generated engine configuration and reporter shim, auth snapshot
and cloud credentials. Every call is idempotent.
"""

import asyncio
import json
import os
import shutil
import sys
import time
from pathlib import Path
from typing import Dict, List, Optional, Union

from jinja2 import Environment, FileSystemLoader, StrictUndefined, TemplateError

from ..core.config import Config
from ..core.exceptions import ConfigGenerationError, CredentialsError
from ..core.logging_config import get_logger, log_performance, log_process_call
from ..execution.models import RunMode
from ..execution.runtime import CloudCredentials, EngineLauncher, resolve_executable
from .layout import WorkspaceLayout

REQUIRED_DEPENDENCIES: Dict[str, str] = {
    "@playwright/test": "^1.40.0",
    "dotenv": "^16.0.0",
    "allure-playwright": "^2.13.0",
    "allure-commandline": "^2.30.0",
}
CLOUD_DEPENDENCIES: Dict[str, str] = {
    "browserstack-node-sdk": "^1.34.0",
}

TEMPLATES_DIR = Path(__file__).parent / "templates"
HOOK_TIMEOUT_MS = 30000


def default_browsers_cache() -> Path:
    """Playwright's per-OS browser cache directory."""
    override = os.getenv("PLAYWRIGHT_BROWSERS_PATH")
    if override and override != "0":
        return Path(override)
    if sys.platform == "win32":
        base = os.getenv("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(base) / "ms-playwright"
    if sys.platform == "darwin":
        return Path.home() / "Library" / "Caches" / "ms-playwright"
    return Path.home() / ".cache" / "ms-playwright"


def has_chromium(cache_dir: Optional[Path]) -> bool:
    if cache_dir is None or not cache_dir.is_dir():
        return False
    return any(p.is_dir() and p.name.startswith("chromium") for p in cache_dir.iterdir())


class WorkspaceBootstrapper:
    """
    Prepares a workspace for one run.

    Dependency and browser installation failures are logged and tolerated;
    the engine will report a missing browser on its own. Configuration
    rendering failures raise ``ConfigGenerationError``.
    """

    def __init__(self, config: Config, launcher: Optional[EngineLauncher] = None):
        self.config = config
        self.launcher = launcher or EngineLauncher(config)
        self.logger = get_logger(__name__)
        self.jinja_env = Environment(
            loader=FileSystemLoader(str(TEMPLATES_DIR)),
            autoescape=False,
            undefined=StrictUndefined,
            keep_trailing_newline=True,
        )

    async def ensure_execution_environment(
        self, layout: WorkspaceLayout, mode: Union[RunMode, str] = RunMode.LOCAL
    ) -> None:
        """
        Dependencies, browsers (local only) and configuration.

        Raises:
            ConfigGenerationError: the engine configuration could not be written
        """
        mode = RunMode(mode)
        start = time.time()

        changed = self.ensure_manifest(layout, mode)
        installed = (layout.root / "node_modules" / "@playwright" / "test").is_dir()
        if changed or not installed:
            await self.install_dependencies(layout)

        if mode == RunMode.LOCAL:
            await self.ensure_browsers(layout)

        self.write_configuration(layout, mode)
        log_performance(
            self.logger,
            "workspace_bootstrap",
            time.time() - start,
            workspace=str(layout.root),
            mode=mode.value,
        )

    # Dependency manifest

    def required_dependencies(self, mode: RunMode) -> Dict[str, str]:
        deps = dict(REQUIRED_DEPENDENCIES)
        if mode == RunMode.CLOUD:
            deps.update(CLOUD_DEPENDENCIES)
        return deps

    def ensure_manifest(self, layout: WorkspaceLayout, mode: RunMode) -> bool:
        """Create or complete ``package.json``; True when it was written."""
        manifest_path = layout.root / "package.json"
        manifest: Dict = {}
        if manifest_path.exists():
            try:
                with open(manifest_path, "r", encoding="utf-8") as f:
                    manifest = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                self.logger.warning(f"Unreadable package.json, leaving it untouched: {e}")
                return True
            if not isinstance(manifest, dict):
                self.logger.warning("package.json is not an object, leaving it untouched")
                return True
        else:
            manifest = {
                "name": f"qa-workbench-{layout.root.name.lower() or 'workspace'}",
                "version": "1.0.0",
                "private": True,
            }

        dependencies = manifest.setdefault("dependencies", {})
        dev_dependencies = manifest.get("devDependencies") or {}
        missing = [
            name
            for name in self.required_dependencies(mode)
            if name not in dependencies and name not in dev_dependencies
        ]
        if manifest_path.exists() and not missing:
            return False

        for name in missing:
            dependencies[name] = self.required_dependencies(mode)[name]

        try:
            layout.root.mkdir(parents=True, exist_ok=True)
            with open(manifest_path, "w", encoding="utf-8") as f:
                json.dump(manifest, f, indent=2)
                f.write("\n")
        except OSError as e:
            self.logger.warning(f"Could not write package.json: {e}")
            return False

        self.logger.info(
            "Dependency manifest updated",
            extra={"metadata": {"added": missing, "workspace": str(layout.root)}},
        )
        return True

    async def _run(self, command: List[str], cwd: Path, label: str) -> Optional[int]:
        """Run a helper command, returning its exit code or None if it never ran."""
        start = time.time()
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(cwd),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            self.logger.warning(f"{label} could not start: {e}")
            log_process_call(self.logger, label, time.time() - start, None)
            return None

        try:
            output, _ = await asyncio.wait_for(
                process.communicate(), timeout=self.config.install_timeout
            )
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            self.logger.warning(f"{label} timed out after {self.config.install_timeout}s")
            return None

        log_process_call(self.logger, label, time.time() - start, process.returncode)
        if process.returncode != 0 and output:
            tail = output.decode("utf-8", errors="replace").strip().splitlines()[-5:]
            self.logger.warning(f"{label} output: " + " / ".join(tail))
        return process.returncode

    async def install_dependencies(self, layout: WorkspaceLayout) -> bool:
        self.logger.info("Installing workspace dependencies")
        code = await self._run([resolve_executable("npm"), "install"], layout.root, "npm install")
        if code != 0:
            self.logger.warning(
                "Dependency install failed, continuing; the run may fail if packages are missing",
                extra={"metadata": {"returncode": code}},
            )
            return False
        return True

    # Browser runtime

    async def ensure_browsers(self, layout: WorkspaceLayout) -> bool:
        """Install Chromium unless the bundled runtime or the cache has it."""
        if has_chromium(self.launcher.bundled_browsers_path()):
            return True
        if has_chromium(default_browsers_cache()):
            return True

        self.logger.info("Chromium not found, installing Playwright browsers")
        code = await self._run(
            [resolve_executable("npx"), "playwright", "install", "chromium"],
            layout.root,
            "playwright install",
        )
        if code != 0:
            self.logger.warning("Browser install failed; run 'npx playwright install' manually")
            return False
        return True

    # Configuration

    def render_reporter(self, layout: WorkspaceLayout) -> str:
        return self.jinja_env.get_template("forensics-reporter.js.j2").render(
            python=sys.executable,
            workspace=str(layout.root),
            timeout_ms=HOOK_TIMEOUT_MS,
        )

    def render_config(self, layout: WorkspaceLayout, mode: RunMode) -> str:
        storage_state = None
        if layout.uses_auth_state:
            storage_state = layout.relative(layout.storage_state_path)
        return self.jinja_env.get_template("playwright.config.ts.j2").render(
            reporter_path=layout.relative(layout.reporter_path),
            base_url=layout.base_url or self.config.base_url_for(layout.platform),
            base_url_env="D365_URL" if layout.platform == "d365" else "BASE_URL",
            storage_state=storage_state,
            headless=self.config.is_ci_mode or mode == RunMode.CLOUD,
        )

    def write_configuration(self, layout: WorkspaceLayout, mode: Union[RunMode, str]) -> Path:
        """
        Regenerate the reporter shim and ``playwright.config.ts``.

        Raises:
            ConfigGenerationError: on any rendering or write failure
        """
        mode = RunMode(mode)
        config_path = layout.config_path
        try:
            layout.reporter_path.parent.mkdir(parents=True, exist_ok=True)
            layout.reporter_path.write_text(self.render_reporter(layout), encoding="utf-8")
            config_path.write_text(self.render_config(layout, mode), encoding="utf-8")
        except (OSError, TemplateError) as e:
            raise ConfigGenerationError(
                f"Failed to generate execution configuration: {e}",
                workspace_path=str(layout.root),
                config_path=str(config_path),
            ) from e

        self.logger.debug(
            "Execution configuration written",
            extra={"metadata": {"config_path": str(config_path), "mode": mode.value}},
        )
        return config_path

    # Auth state and credentials

    def ensure_auth_state(
        self, layout: WorkspaceLayout, mode: Union[RunMode, str] = RunMode.LOCAL
    ) -> Optional[CloudCredentials]:
        """
        Copy the persisted auth snapshot into the workspace when missing and,
        for cloud runs, return the stored credentials.

        Raises:
            CredentialsError: cloud mode without username or access key
        """
        mode = RunMode(mode)

        if layout.uses_auth_state:
            target = layout.storage_state_path
            source = Path(self.config.auth_state_path)
            if not target.exists():
                if source.exists():
                    try:
                        target.parent.mkdir(parents=True, exist_ok=True)
                        shutil.copyfile(source, target)
                        self.logger.info("Copied auth snapshot into workspace")
                    except OSError as e:
                        self.logger.warning(f"Could not copy auth snapshot: {e}")
                else:
                    self.logger.warning(
                        "Auth snapshot not found; tests may fail without a signed-in session",
                        extra={"metadata": {"expected": str(source)}},
                    )

        if mode != RunMode.CLOUD:
            return None
        return self.load_credentials(layout)

    def load_credentials(self, layout: WorkspaceLayout) -> CloudCredentials:
        if self.config.cloud_username and self.config.cloud_access_key:
            return CloudCredentials(self.config.cloud_username, self.config.cloud_access_key)

        path = Path(self.config.credentials_path)
        stored: Dict = {}
        if path.exists():
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = json.load(f)
                stored = (data.get("browserstack") or {}) if isinstance(data, dict) else {}
            except (OSError, json.JSONDecodeError) as e:
                self.logger.warning(f"Unreadable credentials file: {e}")

        username = stored.get("username")
        access_key = stored.get("accessKey") or stored.get("access_key")
        if not username or not access_key:
            raise CredentialsError(
                "BrowserStack credentials are not configured. Add your username "
                "and access key in settings before running in the cloud.",
                workspace_path=str(layout.root),
                credentials_path=str(path),
            )
        return CloudCredentials(username=username, access_key=access_key)
