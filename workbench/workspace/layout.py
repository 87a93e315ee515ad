"""
Directory conventions of a QA Workbench workspace.

The orchestrator, the forensics hook and the locator feedback all locate
bundles and run files through this module so that a test resolved by one of
them is found at the same place by the others.
"""

import json
import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from ..core.exceptions import SpecResolutionError

logger = logging.getLogger(__name__)

DEFAULT_PLATFORM = "d365"
SUPPORTED_PLATFORMS = ("d365", "web-demo")
SPEC_SUFFIX = ".spec.ts"

# Platforms whose tests run against a signed-in session snapshot
AUTH_STATE_PLATFORMS = ("d365",)

_SLUG_SPACES = re.compile(r"\s+")
_SLUG_INVALID = re.compile(r"[^a-z0-9-]")
_CURRENT_LAYOUT = re.compile(r"tests/[^/]+/specs/([^/]+)/[^/]+\.spec\.[jt]s$")


def slugify(name: str) -> str:
    """Turn a human-entered test name into a bundle identity."""
    slug = _SLUG_SPACES.sub("-", name.strip().lower())
    return _SLUG_INVALID.sub("", slug)


def spec_stem(path: Union[str, Path]) -> str:
    """File name of a spec without its ``.spec.ts`` style suffix."""
    name = Path(path).name
    for suffix in (".spec.ts", ".spec.js", ".test.ts", ".test.js"):
        if name.endswith(suffix):
            return name[: -len(suffix)]
    return Path(name).stem


def identity_from_location(file_path: str) -> str:
    """
    Canonical test identity from a spec's source location.

    The bundle directory name wins for the current layout; any other layout
    falls back to the spec file name.
    """
    normalized = file_path.replace("\\", "/")
    match = _CURRENT_LAYOUT.search(normalized)
    if match:
        return match.group(1)
    return spec_stem(normalized)


@dataclass(frozen=True)
class ResolvedSpec:
    """A logical test identity mapped onto the workspace."""

    test_name: str
    spec_path: Path
    spec_rel_path: str
    bundle_dir: Path


class WorkspaceLayout:
    """Path conventions for one workspace root."""

    def __init__(self, root: Union[str, Path]):
        self.root = Path(root).resolve()
        self._descriptor: Optional[Dict[str, Any]] = None

    # Workspace descriptor

    @property
    def descriptor(self) -> Dict[str, Any]:
        """Contents of ``workspace.json``, empty when absent or unreadable."""
        if self._descriptor is None:
            path = self.root / "workspace.json"
            data: Dict[str, Any] = {}
            if path.exists():
                try:
                    with open(path, "r", encoding="utf-8") as f:
                        loaded = json.load(f)
                    if isinstance(loaded, dict):
                        data = loaded
                except (OSError, json.JSONDecodeError) as e:
                    logger.warning(
                        f"Could not read workspace descriptor: {e}",
                        extra={"metadata": {"path": str(path)}},
                    )
            self._descriptor = data
        return self._descriptor

    @property
    def platform(self) -> str:
        platform = self.descriptor.get("type") or DEFAULT_PLATFORM
        if platform not in SUPPORTED_PLATFORMS:
            logger.warning(f"Unknown workspace type '{platform}', using {DEFAULT_PLATFORM}")
            return DEFAULT_PLATFORM
        return platform

    @property
    def base_url(self) -> Optional[str]:
        settings = self.descriptor.get("settings") or {}
        return settings.get("baseUrl") or None

    @property
    def uses_auth_state(self) -> bool:
        return self.platform in AUTH_STATE_PLATFORMS

    # Bundles

    def bundle_candidates(self, identity: str) -> List[Path]:
        """Bundle directories for an identity, in lookup order."""
        tests = self.root / "tests"
        return [
            tests / self.platform / "specs" / identity,
            tests / self.platform / identity,
            tests,
        ]

    def spec_candidates(self, identity: str) -> List[Path]:
        return [d / f"{identity}{SPEC_SUFFIX}" for d in self.bundle_candidates(identity)]

    def bundle_dir(self, identity: str) -> Path:
        """
        Bundle directory for an identity.

        The directory holding an existing spec wins, then an existing bundle
        directory, then the current layout (which may not exist yet).
        """
        for spec in self.spec_candidates(identity):
            if spec.is_file():
                return spec.parent
        for candidate in self.bundle_candidates(identity)[:2]:
            if candidate.is_dir():
                return candidate
        return self.bundle_candidates(identity)[0]

    def test_identities(self) -> List[str]:
        """Identities of every spec under ``tests/``, in any of the layouts."""
        tests = self.root / "tests"
        if not tests.is_dir():
            return []
        identities = set()
        for spec in tests.rglob(f"*{SPEC_SUFFIX}"):
            if "node_modules" in spec.parts:
                continue
            identities.add(identity_from_location(self.relative(spec)))
        return sorted(identities)

    def failure_artifact_path(self, identity: str, bundle_dir: Optional[Path] = None) -> Path:
        return (bundle_dir or self.bundle_dir(identity)) / f"{identity}_failure.json"

    def meta_path(self, identity: str, bundle_dir: Optional[Path] = None) -> Path:
        return (bundle_dir or self.bundle_dir(identity)) / f"{identity}.meta.json"

    def resolve_spec(self, spec_path_or_test_name: str) -> ResolvedSpec:
        """
        Map a spec path or logical test name to an existing spec file.

        Raises:
            SpecResolutionError: when nothing under the known layouts exists
        """
        requested = spec_path_or_test_name.strip()
        attempted: List[str] = []

        if requested.endswith((".ts", ".js")):
            direct = Path(requested)
            if not direct.is_absolute():
                direct = self.root / direct
            attempted.append(str(direct))
            if direct.is_file():
                return self._resolved(direct.resolve())
            requested = spec_stem(requested)

        identity = slugify(requested)
        if identity:
            for spec in self.spec_candidates(identity):
                attempted.append(str(spec))
                if spec.is_file():
                    return self._resolved(spec)

        raise SpecResolutionError(
            f"Test file not found for '{spec_path_or_test_name}'",
            identity=spec_path_or_test_name,
            attempted_paths=attempted,
        )

    def _resolved(self, spec: Path) -> ResolvedSpec:
        return ResolvedSpec(
            test_name=spec_stem(spec),
            spec_path=spec,
            spec_rel_path=self.relative(spec),
            bundle_dir=spec.parent,
        )

    # Run files

    @property
    def run_index_path(self) -> Path:
        return self.root / "runs" / "index.json"

    @property
    def locator_status_path(self) -> Path:
        return self.root / "locators" / "status.json"

    @property
    def storage_state_path(self) -> Path:
        return self.root / "storage_state" / f"{self.platform}.json"

    @property
    def config_path(self) -> Path:
        return self.root / "playwright.config.ts"

    @property
    def reporter_path(self) -> Path:
        return self.root / ".workbench" / "forensics-reporter.js"

    def scratch_dir(self, run_id: str) -> Path:
        return self.root / "test-results" / run_id

    def results_dir(self, run_id: str) -> Path:
        return self.root / "allure-results" / run_id

    def report_dir(self, run_id: str) -> Path:
        return self.root / "allure-report" / run_id

    def traces_dir(self, run_id: str) -> Path:
        return self.root / "traces" / run_id

    def relative(self, path: Union[str, Path]) -> str:
        """Workspace-relative path with forward slashes."""
        return Path(os.path.relpath(Path(path), self.root)).as_posix()

    def relative_if_inside(self, path: Optional[str]) -> Optional[str]:
        """Workspace-relative form of ``path`` if it lies under the root."""
        if not path:
            return path
        candidate = Path(path)
        if not candidate.is_absolute():
            return candidate.as_posix()
        try:
            return candidate.resolve().relative_to(self.root).as_posix()
        except ValueError:
            return path
