"""
Test execution components for QA Workbench.

Run models, engine launching, output streaming and trace relocation. The
run orchestrator lives in ``workbench.execution.orchestrator``.
"""

from .models import (
    RunEvent,
    RunEventType,
    RunMode,
    RunRecord,
    RunRequest,
    RunStatus,
    CloudSessionMeta,
)

__all__ = [
    "RunEvent",
    "RunEventType",
    "RunMode",
    "RunRecord",
    "RunRequest",
    "RunStatus",
    "CloudSessionMeta",
]
