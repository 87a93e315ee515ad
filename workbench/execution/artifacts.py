"""
Trace relocation.

Moves the trace archives the engine wrote into a run's scratch directory
to ``traces/<runId>/`` so they stay addressable after the scratch area is
reused.
"""

import shutil
import time
from pathlib import Path
from typing import List

from ..core.exceptions import FileOperationError
from ..core.logging_config import get_logger, log_performance
from ..workspace.layout import WorkspaceLayout


class TraceRelocator:
    """
    Relocates trace archives of one run.

    A single trace becomes ``traces/<runId>/<testName>.zip``; several are
    numbered ``<testName>-1.zip``, ``<testName>-2.zip`` ...
    """

    def __init__(self, layout: WorkspaceLayout, run_id: str):
        self.layout = layout
        self.run_id = run_id
        self.logger = get_logger(__name__, run_id=run_id)

    def find_traces(self) -> List[Path]:
        scratch = self.layout.scratch_dir(self.run_id)
        if not scratch.is_dir():
            return []
        return sorted(p for p in scratch.rglob("*.zip") if p.is_file())

    def relocate(self, test_name: str) -> List[str]:
        """
        Move every trace found and return workspace-relative destinations.

        A trace that cannot be moved is logged and left out of the result.
        """
        start = time.time()
        traces = self.find_traces()
        if not traces:
            self.logger.debug("No traces to relocate")
            return []

        target_dir = self.layout.traces_dir(self.run_id)
        target_dir.mkdir(parents=True, exist_ok=True)

        relocated: List[str] = []
        for index, source in enumerate(traces):
            name = f"{test_name}.zip" if len(traces) == 1 else f"{test_name}-{index + 1}.zip"
            destination = target_dir / name
            try:
                shutil.move(str(source), str(destination))
            except (OSError, shutil.Error) as e:
                error = FileOperationError(
                    f"Failed to relocate trace {source}: {e}",
                    file_path=str(source),
                    operation="move",
                )
                self.logger.warning(error.message, extra={"metadata": error.to_dict()})
                continue
            relocated.append(self.layout.relative(destination))

        log_performance(
            self.logger,
            "trace_relocation",
            time.time() - start,
            trace_count=len(relocated),
        )
        return relocated
