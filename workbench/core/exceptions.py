"""
Base exception classes for QA Workbench.

Provides a hierarchy of exceptions for the error types that can occur
while preparing, running and post-processing a test run.
"""

from typing import Optional, Dict, Any, List


class WorkbenchError(Exception):
    """Base exception class for all QA Workbench errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = context or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class SpecResolutionError(WorkbenchError):
    """Raised when a test identity does not resolve to a spec file."""

    def __init__(
        self,
        message: str,
        identity: Optional[str] = None,
        attempted_paths: Optional[List[str]] = None,
    ):
        super().__init__(message, "SPEC_NOT_FOUND")
        self.identity = identity
        self.attempted_paths = attempted_paths or []
        self.context.update(
            {
                "identity": identity,
                "attempted_paths": self.attempted_paths,
            }
        )


class BootstrapError(WorkbenchError):
    """Raised when the workspace cannot be prepared for execution."""

    def __init__(
        self,
        message: str,
        workspace_path: Optional[str] = None,
        stage: Optional[str] = None,
        error_code: str = "BOOTSTRAP_FAILED",
    ):
        super().__init__(message, error_code)
        self.workspace_path = workspace_path
        self.stage = stage
        self.context.update(
            {
                "workspace_path": workspace_path,
                "stage": stage,
            }
        )


class ConfigGenerationError(BootstrapError):
    """Raised when the execution engine configuration cannot be written."""

    def __init__(
        self,
        message: str,
        workspace_path: Optional[str] = None,
        config_path: Optional[str] = None,
    ):
        super().__init__(
            message,
            workspace_path=workspace_path,
            stage="config_generation",
            error_code="CONFIG_GENERATION_FAILED",
        )
        self.config_path = config_path
        self.context["config_path"] = config_path


class CredentialsError(BootstrapError):
    """Raised when cloud execution is requested without stored credentials."""

    def __init__(
        self,
        message: str,
        workspace_path: Optional[str] = None,
        credentials_path: Optional[str] = None,
    ):
        super().__init__(
            message,
            workspace_path=workspace_path,
            stage="auth_state",
            error_code="CREDENTIALS_MISSING",
        )
        self.credentials_path = credentials_path
        self.context["credentials_path"] = credentials_path


class SpawnError(WorkbenchError):
    """Raised when the execution engine process cannot be started."""

    def __init__(
        self,
        message: str,
        command: Optional[List[str]] = None,
        run_id: Optional[str] = None,
    ):
        super().__init__(message, "SPAWN_FAILED")
        self.command = command or []
        self.run_id = run_id
        self.context.update(
            {
                "command": self.command,
                "run_id": run_id,
            }
        )


class FileOperationError(WorkbenchError):
    """Raised when file system operations fail."""

    def __init__(
        self,
        message: str,
        file_path: Optional[str] = None,
        operation: Optional[str] = None,
    ):
        super().__init__(message, "FILE_OPERATION_FAILED")
        self.file_path = file_path
        self.operation = operation
        self.context.update(
            {
                "file_path": file_path,
                "operation": operation,
            }
        )


class ValidationError(WorkbenchError):
    """Raised when validation fails."""

    def __init__(
        self,
        message: str,
        validation_type: Optional[str] = None,
        violations: Optional[list] = None,
    ):
        super().__init__(message, "VALIDATION_FAILED")
        self.validation_type = validation_type
        self.violations = violations or []
        self.context.update(
            {
                "validation_type": validation_type,
                "violations": violations,
            }
        )


class InvalidTransitionError(WorkbenchError):
    """Raised when a run record is moved out of a terminal status."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        from_status: Optional[str] = None,
        to_status: Optional[str] = None,
    ):
        super().__init__(message, "INVALID_STATUS_TRANSITION")
        self.run_id = run_id
        self.from_status = from_status
        self.to_status = to_status
        self.context.update(
            {
                "run_id": run_id,
                "from_status": from_status,
                "to_status": to_status,
            }
        )


class ReportGenerationError(WorkbenchError):
    """Raised when the static report for a run cannot be produced."""

    def __init__(
        self,
        message: str,
        run_id: Optional[str] = None,
        returncode: Optional[int] = None,
        output: Optional[str] = None,
    ):
        super().__init__(message, "REPORT_GENERATION_FAILED")
        self.run_id = run_id
        self.returncode = returncode
        self.output = output
        self.context.update(
            {
                "run_id": run_id,
                "returncode": returncode,
            }
        )
