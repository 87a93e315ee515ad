"""
Execution engine launcher.

Builds the command line, working directory and environment for one
Playwright Test invocation and spawns it as an asyncio subprocess.
"""

import asyncio
import os
import shutil
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from ..core.config import Config
from ..core.exceptions import SpawnError
from ..core.logging_config import get_logger
from ..workspace.layout import ResolvedSpec, WorkspaceLayout
from .models import RunMode, RunRequest


@dataclass
class CloudCredentials:
    """Remote browser-grid credentials read from the credentials file."""

    username: str
    access_key: str


@dataclass
class LaunchSpec:
    """Everything needed to start one engine process."""

    command: List[str]
    cwd: Path
    env: Dict[str, str] = field(default_factory=dict)

    def describe(self) -> str:
        return " ".join(self.command)


def resolve_executable(name: str) -> str:
    """Resolve ``npx``/``npm`` including the Windows ``.cmd`` shims."""
    if sys.platform == "win32":
        return shutil.which(f"{name}.cmd") or shutil.which(name) or f"{name}.cmd"
    return shutil.which(name) or name


class EngineLauncher:
    """Mode-specific invocation of the Playwright Test runner."""

    def __init__(self, config: Config):
        self.config = config
        self.logger = get_logger(__name__)

    # Bundled runtime

    @property
    def runtime_dir(self) -> Path:
        return Path(self.config.runtime_dir)

    def bundled_node(self) -> Optional[Path]:
        name = "node.exe" if sys.platform == "win32" else "node"
        for candidate in (self.runtime_dir / name, self.runtime_dir / "bin" / name):
            if candidate.is_file():
                return candidate
        return None

    def bundled_cli(self) -> Optional[Path]:
        cli = self.runtime_dir / "node_modules" / "@playwright" / "test" / "cli.js"
        return cli if cli.is_file() else None

    def has_bundled_runtime(self) -> bool:
        return self.bundled_node() is not None and self.bundled_cli() is not None

    def bundled_browsers_path(self) -> Optional[Path]:
        browsers = self.runtime_dir / "ms-playwright"
        return browsers if browsers.is_dir() else None

    # Invocation

    def base_env(self, request: RunRequest, layout: WorkspaceLayout, run_id: str) -> Dict[str, str]:
        env = dict(os.environ)
        env["WORKBENCH_RUN_ID"] = run_id
        env["WORKBENCH_WORKSPACE"] = str(layout.root)
        env["WORKBENCH_PYTHON"] = sys.executable
        if request.dataset_filter:
            env["WORKBENCH_DATASET_IDS"] = ",".join(request.dataset_filter)
        else:
            env.pop("WORKBENCH_DATASET_IDS", None)
        return env

    def build(
        self,
        request: RunRequest,
        layout: WorkspaceLayout,
        resolved: ResolvedSpec,
        run_id: str,
        credentials: Optional[CloudCredentials] = None,
    ) -> LaunchSpec:
        """
        Launch description for one run.

        Raises:
            SpawnError: cloud mode without credentials
        """
        env = self.base_env(request, layout, run_id)
        config_arg = f"--config={layout.relative(layout.config_path)}"

        if request.run_mode == RunMode.CLOUD:
            if credentials is None:
                raise SpawnError(
                    "Cloud execution requires BrowserStack credentials",
                    run_id=run_id,
                )
            env["BROWSERSTACK_USERNAME"] = credentials.username
            env["BROWSERSTACK_ACCESS_KEY"] = credentials.access_key
            env["BROWSERSTACK_LOCAL"] = "true"
            env["STORAGE_STATE_PATH"] = str(layout.storage_state_path)
            if request.target_descriptor:
                env["WORKBENCH_CLOUD_TARGET"] = request.target_descriptor
            command = [
                resolve_executable("npx"),
                "browserstack-node-sdk",
                "playwright",
                "test",
                resolved.spec_rel_path,
                config_arg,
            ]
            return LaunchSpec(command=command, cwd=layout.root, env=env)

        node, cli = self.bundled_node(), self.bundled_cli()
        if node and cli:
            browsers = self.bundled_browsers_path()
            if browsers:
                env["PLAYWRIGHT_BROWSERS_PATH"] = str(browsers)
            command = [str(node), str(cli), "test", resolved.spec_rel_path, config_arg]
        else:
            command = [resolve_executable("npx"), "playwright", "test", resolved.spec_rel_path, config_arg]
        return LaunchSpec(command=command, cwd=layout.root, env=env)

    async def spawn(self, launch: LaunchSpec, run_id: str) -> asyncio.subprocess.Process:
        """
        Start the engine with piped output.

        Raises:
            SpawnError: if the executable cannot be started
        """
        self.logger.info(
            f"Spawning engine: {launch.describe()}",
            extra={"run_id": run_id, "metadata": {"cwd": str(launch.cwd)}},
        )
        try:
            return await asyncio.create_subprocess_exec(
                *launch.command,
                cwd=str(launch.cwd),
                env=launch.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (OSError, ValueError) as e:
            raise SpawnError(
                f"Failed to start test process: {e}",
                command=launch.command,
                run_id=run_id,
            ) from e
