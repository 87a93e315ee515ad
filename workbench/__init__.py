"""
QA Workbench - test execution orchestration and failure forensics

Runs Playwright tests in a workbench workspace, records run history,
captures structured failure artifacts and feeds failures back into
locator health.
"""

__version__ = "0.1.0"
__author__ = "QA Workbench Team"

from .core.config import Config
from .core.exceptions import WorkbenchError
from .core.logging_config import setup_logging

__all__ = [
    "Config",
    "WorkbenchError",
    "setup_logging",
]
