"""Core components for QA Workbench."""

from .config import Config
from .exceptions import (
    WorkbenchError,
    SpecResolutionError,
    BootstrapError,
    ConfigGenerationError,
    CredentialsError,
    SpawnError,
    FileOperationError,
    ValidationError,
    InvalidTransitionError,
    ReportGenerationError,
)
from .logging_config import setup_logging, get_logger

__all__ = [
    "Config",
    "WorkbenchError",
    "SpecResolutionError",
    "BootstrapError",
    "ConfigGenerationError",
    "CredentialsError",
    "SpawnError",
    "FileOperationError",
    "ValidationError",
    "InvalidTransitionError",
    "ReportGenerationError",
    "setup_logging",
    "get_logger",
]
