"""
Static report generation.

Runs the Allure command line over one run's structured results and writes
the HTML report to ``allure-report/<runId>/``. Executor details (local
desktop or the detected CI system) are attached to the results first so
the report shows where the run happened.
"""

import asyncio
import json
import logging
import os
import shutil
import sys
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional

from ..core.exceptions import ReportGenerationError
from ..core.logging_config import log_performance, log_process_call
from ..workspace.layout import WorkspaceLayout


class CIEnvironment(Enum):
    """Supported CI environments."""

    LOCAL = "local"
    GITHUB_ACTIONS = "github_actions"
    GITLAB_CI = "gitlab_ci"
    JENKINS = "jenkins"
    AZURE_DEVOPS = "azure_devops"
    UNKNOWN = "unknown"


def detect_ci_environment() -> CIEnvironment:
    """Detect the current CI environment."""
    if os.getenv("GITHUB_ACTIONS"):
        return CIEnvironment.GITHUB_ACTIONS
    elif os.getenv("GITLAB_CI"):
        return CIEnvironment.GITLAB_CI
    elif os.getenv("JENKINS_URL"):
        return CIEnvironment.JENKINS
    elif os.getenv("TF_BUILD"):
        return CIEnvironment.AZURE_DEVOPS
    elif os.getenv("CI"):
        return CIEnvironment.UNKNOWN
    return CIEnvironment.LOCAL


class ReportGenerator:
    """
    Generates the per-run Allure report.

    ``generate`` returns ``None`` when the run produced no structured
    results and raises ``ReportGenerationError`` when the command fails.
    """

    def __init__(self, timeout: float = 180, logger: Optional[logging.Logger] = None):
        self.timeout = timeout
        self.logger = logger or logging.getLogger(__name__)
        self.ci_environment = detect_ci_environment()

    def command_for(self, results_dir: Path, report_dir: Path) -> List[str]:
        npx = "npx.cmd" if sys.platform == "win32" else "npx"
        return [
            shutil.which(npx) or npx,
            "allure",
            "generate",
            str(results_dir),
            "--clean",
            "-o",
            str(report_dir),
        ]

    def _executor_info(self, run_id: str, test_name: str) -> Dict[str, Any]:
        info: Dict[str, Any] = {
            "name": "QA Workbench" if self.ci_environment == CIEnvironment.LOCAL else self.ci_environment.value,
            "type": self.ci_environment.value,
            "buildName": f"{test_name} ({run_id[:8]})",
            "reportName": test_name,
        }
        if self.ci_environment == CIEnvironment.GITHUB_ACTIONS:
            server = os.getenv("GITHUB_SERVER_URL", "https://github.com")
            repository = os.getenv("GITHUB_REPOSITORY")
            gh_run = os.getenv("GITHUB_RUN_ID")
            if repository and gh_run:
                info["buildUrl"] = f"{server}/{repository}/actions/runs/{gh_run}"
        elif self.ci_environment == CIEnvironment.GITLAB_CI:
            info["buildUrl"] = os.getenv("CI_JOB_URL")
        elif self.ci_environment == CIEnvironment.JENKINS:
            info["buildUrl"] = os.getenv("BUILD_URL")
        return {k: v for k, v in info.items() if v}

    def write_executor_info(self, results_dir: Path, run_id: str, test_name: str) -> None:
        """Drop ``executor.json`` into the results directory for Allure."""
        try:
            with open(results_dir / "executor.json", "w", encoding="utf-8") as f:
                json.dump(self._executor_info(run_id, test_name), f, indent=2)
        except OSError as e:
            self.logger.warning(f"Could not write executor info: {e}")

    @staticmethod
    def has_results(results_dir: Path) -> bool:
        return results_dir.is_dir() and any(results_dir.iterdir())

    async def generate(self, layout: WorkspaceLayout, run_id: str, test_name: str) -> Optional[str]:
        """
        Generate the report for one run.

        Returns:
            Workspace-relative path of ``index.html``, or ``None`` when there
            were no results to report on

        Raises:
            ReportGenerationError: the command could not run, timed out or
                exited non-zero
        """
        results_dir = layout.results_dir(run_id)
        if not self.has_results(results_dir):
            self.logger.debug(
                "No structured results, skipping report",
                extra={"run_id": run_id, "metadata": {"results_dir": str(results_dir)}},
            )
            return None

        self.write_executor_info(results_dir, run_id, test_name)

        report_dir = layout.report_dir(run_id)
        command = self.command_for(results_dir, report_dir)
        start = time.time()

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(layout.root),
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            log_process_call(self.logger, "allure generate", time.time() - start, None)
            raise ReportGenerationError(
                f"Could not start report generator: {e}", run_id=run_id
            ) from e

        try:
            output, _ = await asyncio.wait_for(process.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            process.kill()
            await process.wait()
            raise ReportGenerationError(
                f"Report generation timed out after {self.timeout}s", run_id=run_id
            )

        text = output.decode("utf-8", errors="replace") if output else ""
        log_process_call(
            self.logger, "allure generate", time.time() - start, process.returncode, run_id=run_id
        )
        if process.returncode != 0:
            raise ReportGenerationError(
                f"Report generation exited with code {process.returncode}",
                run_id=run_id,
                returncode=process.returncode,
                output=text[-2000:],
            )

        index = report_dir / "index.html"
        log_performance(self.logger, "report_generation", time.time() - start, run_id=run_id)
        return layout.relative(index)
