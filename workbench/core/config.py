"""
Configuration management for QA Workbench.

Handles environment variables, defaults, and configuration validation
for the execution pipeline.
"""

import os
from typing import Optional, Dict, Any
from dataclasses import dataclass, field
from pathlib import Path


def _default_home() -> Path:
    return Path.home() / ".qa-workbench"


@dataclass
class Config:
    """Configuration class for QA Workbench with environment variable support."""

    # Environment detection
    ci_mode: bool = field(default=False)

    # Logging configuration
    log_level: str = field(default="INFO")
    log_format: str = field(default="text")

    # Application data (auth snapshot, credentials, logs)
    app_data_dir: Path = field(default_factory=_default_home)
    logs_dir: Optional[Path] = field(default=None)
    auth_state_path: Optional[Path] = field(default=None)
    credentials_path: Optional[Path] = field(default=None)

    # Execution engine
    runtime_dir: Optional[Path] = field(default=None)
    default_base_url: str = field(
        default="https://fourhands-test.sandbox.operations.dynamics.com/"
    )
    web_demo_base_url: str = field(
        default="https://fh-test-fourhandscom.azurewebsites.net/"
    )
    install_timeout: int = field(default=600)
    report_timeout: int = field(default=180)

    # Locator feedback
    note_max_length: int = field(default=200)

    # Cloud credential overrides
    cloud_username: Optional[str] = field(default=None)
    cloud_access_key: Optional[str] = field(default=None)

    def __post_init__(self):
        """Post-initialization normalization and environment overrides."""
        ci_env = os.getenv("CI", "").lower() == "true"
        if ci_env and self.ci_mode is False:
            self.ci_mode = True

        log_env = os.getenv("QA_WORKBENCH_LOG_LEVEL")
        if log_env:
            self.log_level = log_env

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if self.log_level.upper() == "WARN":
            self.log_level = "WARNING"
        if self.log_level.upper() not in valid_log_levels:
            self.log_level = "INFO"
        else:
            self.log_level = self.log_level.upper()

        format_env = os.getenv("QA_WORKBENCH_LOG_FORMAT")
        if format_env in ("json", "text"):
            self.log_format = format_env
        elif self.ci_mode and self.log_format == "text":
            self.log_format = "json"

        home_env = os.getenv("QA_WORKBENCH_HOME")
        if home_env:
            self.app_data_dir = Path(home_env)
        self.app_data_dir = Path(self.app_data_dir)

        runtime_env = os.getenv("QA_WORKBENCH_RUNTIME_DIR")
        if runtime_env:
            self.runtime_dir = Path(runtime_env)

        base_url_env = os.getenv("QA_WORKBENCH_BASE_URL")
        if base_url_env:
            self.default_base_url = base_url_env

        username_env = os.getenv("BROWSERSTACK_USERNAME")
        access_key_env = os.getenv("BROWSERSTACK_ACCESS_KEY")
        if username_env and access_key_env:
            self.cloud_username = username_env
            self.cloud_access_key = access_key_env

        # Derived paths follow the application data directory unless set
        if self.logs_dir is None:
            self.logs_dir = self.app_data_dir / "logs"
        if self.auth_state_path is None:
            self.auth_state_path = self.app_data_dir / "storage_state" / "d365.json"
        if self.credentials_path is None:
            self.credentials_path = self.app_data_dir / "settings.json"
        if self.runtime_dir is None:
            self.runtime_dir = self.app_data_dir / "playwright-runtime"

    @property
    def is_ci_mode(self) -> bool:
        """Check if running in CI environment."""
        return self.ci_mode

    @property
    def debug_enabled(self) -> bool:
        """Check if debug logging is enabled."""
        return self.log_level == "DEBUG"

    def get_log_file_path(self) -> Path:
        """Get the main log file path."""
        self.logs_dir.mkdir(parents=True, exist_ok=True)
        return self.logs_dir / "qa-workbench.log"

    def get_debug_log_dir(self) -> Path:
        """Get the debug log directory path."""
        debug_dir = self.logs_dir / "debug"
        debug_dir.mkdir(parents=True, exist_ok=True)
        return debug_dir

    def base_url_for(self, platform: str) -> str:
        """Default target URL for a workspace platform type."""
        if platform == "web-demo":
            return self.web_demo_base_url
        return self.default_base_url

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary for logging."""
        return {
            "ci_mode": self.ci_mode,
            "log_level": self.log_level,
            "log_format": self.log_format,
            "app_data_dir": str(self.app_data_dir),
            "logs_dir": str(self.logs_dir),
            "auth_state_path": str(self.auth_state_path),
            "credentials_path": str(self.credentials_path),
            "runtime_dir": str(self.runtime_dir),
            "default_base_url": self.default_base_url,
            "install_timeout": self.install_timeout,
            "report_timeout": self.report_timeout,
            "cloud_credentials_from_env": bool(self.cloud_username),
        }

    @classmethod
    def from_env(cls) -> "Config":
        """Create configuration from environment variables."""
        ci = os.getenv("CI", "").lower() == "true"
        log_level = os.getenv("QA_WORKBENCH_LOG_LEVEL", "INFO").upper()
        log_format = os.getenv("QA_WORKBENCH_LOG_FORMAT", "json" if ci else "text")
        app_data_dir = Path(os.getenv("QA_WORKBENCH_HOME", str(_default_home())))

        return cls(
            ci_mode=ci,
            log_level=log_level,
            log_format=log_format,
            app_data_dir=app_data_dir,
        )

    def validate(self) -> None:
        """Validate configuration and raise ValidationError if invalid."""
        from .exceptions import ValidationError

        errors = []

        valid_log_levels = ["DEBUG", "INFO", "WARNING", "ERROR"]
        if self.log_level not in valid_log_levels:
            errors.append(
                f"Invalid log level: {self.log_level}. Must be one of {valid_log_levels}"
            )

        if self.log_format not in ("json", "text"):
            errors.append(f"Invalid log format: {self.log_format}")

        if self.install_timeout <= 0:
            errors.append("install_timeout must be positive")

        if self.report_timeout <= 0:
            errors.append("report_timeout must be positive")

        if self.note_max_length < 20:
            errors.append("note_max_length must be at least 20 characters")

        if not self.default_base_url.startswith(("http://", "https://")):
            errors.append(f"Invalid default base URL: {self.default_base_url}")

        if errors:
            message = "Configuration validation failed: " + "; ".join(errors)
            raise ValidationError(
                message,
                validation_type="config",
                violations=errors,
            )
