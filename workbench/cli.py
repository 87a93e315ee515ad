"""
Main CLI interface for QA Workbench.

Runs tests with live output, lists run history and locator health, hosts
the forensics reporter hook and checks the local environment.
"""

import argparse
import asyncio
import json
import shutil
import sys
import uuid
from pathlib import Path
from typing import List, Optional

from . import __version__
from .analysis import forensics
from .analysis.locator_health import LocatorStatusRegistry
from .analysis.models import LocatorState
from .core.config import Config
from .core.config_manager import get_config_manager
from .core.exceptions import WorkbenchError
from .core.logging_config import setup_logging
from .execution.models import RunEvent, RunEventType, RunMode, RunRequest, RunStatus
from .execution.orchestrator import RunOrchestrator
from .execution.runtime import EngineLauncher, resolve_executable
from .persistence.bundle_meta import PerTestMetaStore
from .persistence.run_index import RunIndexStore
from .workspace.layout import WorkspaceLayout


def _load_config() -> Config:
    return get_config_manager().get_config()


def _print_event(event: RunEvent) -> None:
    if event.type == RunEventType.LOG:
        print(event.message)
    elif event.type == RunEventType.ERROR:
        print(event.message, file=sys.stderr)
    elif event.type == RunEventType.STATUS:
        print(f"▶️  Run {event.run_id[:8]} {event.status}")
    elif event.type == RunEventType.FINISHED:
        icon = "✅" if event.status == RunStatus.PASSED.value else "❌"
        print(f"{icon} Run {event.run_id[:8]} {event.status} (exit code: {event.exit_code})")


async def _run_once(config: Config, request: RunRequest) -> int:
    orchestrator = RunOrchestrator(config)
    orchestrator.subscribe(_print_event)

    # Config file edits during a run apply to the steps that start afterwards
    manager = get_config_manager()
    loop = asyncio.get_running_loop()

    def on_reload(reloaded: Config) -> None:
        loop.call_soon_threadsafe(orchestrator.apply_config, reloaded)

    manager.add_reload_callback(on_reload)
    manager.start_hot_reload()
    try:
        run_id = await orchestrator.start(request)
        record = await orchestrator.wait(run_id)
    finally:
        manager.remove_reload_callback(on_reload)
        manager.stop_hot_reload()

    if record is None:
        return 1
    if record.trace_paths:
        print(f"🧵 Traces: {', '.join(record.trace_paths)}")
    if record.report_path:
        print(f"📊 Report: {record.report_path}")
    for failure in record.assertion_failures or []:
        print(
            f"🔎 {failure.assertion_type} on {failure.target}: "
            f"expected {failure.expected!r}, received {failure.actual!r}"
        )
    return 0 if record.status == RunStatus.PASSED else 1


def cmd_run(args: argparse.Namespace) -> int:
    """Run a test and stream its output."""
    try:
        config = _load_config()
        setup_logging(config, str(uuid.uuid4()), stream=sys.stderr)
        request = RunRequest(
            workspace_path=str(Path(args.workspace).resolve()),
            spec_path_or_test_name=args.spec,
            run_mode=RunMode(args.mode),
            target_descriptor=args.target,
            dataset_filter=args.dataset or None,
        )
        return asyncio.run(_run_once(config, request))
    except WorkbenchError as e:
        print(f"❌ {e.message}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("⏹️  Interrupted", file=sys.stderr)
        return 130
    except Exception as e:
        print(f"❌ Unexpected error: {e}", file=sys.stderr)
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1


def cmd_runs(args: argparse.Namespace) -> int:
    """List the run history of a workspace."""
    layout = WorkspaceLayout(args.workspace)
    records = RunIndexStore(layout.run_index_path).list(limit=args.limit)

    if args.json:
        print(json.dumps([r.to_json_dict() for r in records], indent=2))
        return 0

    if not records:
        print("No runs recorded yet.")
        return 0

    for record in records:
        icon = {"passed": "✅", "failed": "❌", "running": "⏳"}.get(record.status.value, "•")
        line = f"{icon} {record.started_at}  {record.run_id[:8]}  {record.test_name}  [{record.source.value}]"
        if record.assertion_failures:
            line += f"  ({record.assertion_failures[0].assertion_type})"
        print(line)
    return 0


def cmd_tests(args: argparse.Namespace) -> int:
    """List the workspace's tests with their last run."""
    metas = PerTestMetaStore(WorkspaceLayout(args.workspace)).read_all()

    if args.json:
        print(json.dumps(metas, indent=2))
        return 0

    if not metas:
        print("No test runs recorded yet.")
        return 0

    for meta in metas:
        icon = {"passed": "✅", "failed": "❌"}.get(meta.get("lastStatus"), "•")
        run_id = str(meta.get("lastRunId") or "")[:8]
        print(f"{icon} {meta.get('name')}  last run {meta.get('lastRunAt') or '-'}  ({run_id})")
    return 0


def cmd_locators(args: argparse.Namespace) -> int:
    """List locator statuses, or set one."""
    registry = LocatorStatusRegistry(WorkspaceLayout(args.workspace))

    if getattr(args, "locators_command", None) == "set":
        try:
            status = registry.set_status(args.key, LocatorState(args.state), note=args.note, test_name=args.test)
        except WorkbenchError as e:
            print(f"❌ {e.message}", file=sys.stderr)
            return 1
        print(f"✅ {args.key} -> {status.state.value}")
        return 0

    statuses = registry.read_all()
    if args.json:
        print(json.dumps({k: v.to_json_dict() for k, v in statuses.items()}, indent=2))
        return 0

    if not statuses:
        print("No locator statuses recorded.")
        return 0

    icons = {"healthy": "🟢", "warning": "🟡", "failing": "🔴", "untested": "⚪"}
    for key, status in sorted(statuses.items()):
        print(f"{icons.get(status.state.value, '•')} {key}")
        if status.note:
            print(f"     {status.note}")
    return 0


def cmd_forensics(args: argparse.Namespace) -> int:
    """Reporter hook entry point; reads one payload from stdin."""
    return forensics.main()


def _check(ok: bool, label: str) -> bool:
    print(f"   {'✅' if ok else '❌'} {label}")
    return ok


def cmd_health(args: argparse.Namespace) -> int:
    """Environment health check."""
    print("🏥 QA Workbench Health Check")
    print("=" * 40)

    config = _load_config()
    healthy = True

    print("🔍 Configuration:")
    errors = get_config_manager().validate_config(config)
    if errors:
        healthy = False
        for error in errors:
            print(f"   ❌ {error}")
    else:
        print("   ✅ Configuration is valid")

    print("🔧 Execution engine:")
    launcher = EngineLauncher(config)
    bundled = launcher.has_bundled_runtime()
    _check(bundled, f"Bundled runtime ({launcher.runtime_dir})")
    node_ok = shutil.which("node") is not None
    npx_ok = shutil.which(Path(resolve_executable("npx")).name) is not None
    _check(node_ok, "node on PATH")
    _check(npx_ok, "npx on PATH")
    if not bundled and not (node_ok and npx_ok):
        healthy = False

    print("🔐 Authentication:")
    _check(Path(config.auth_state_path).exists(), f"Auth snapshot ({config.auth_state_path})")
    has_credentials = bool(config.cloud_username and config.cloud_access_key)
    if not has_credentials and Path(config.credentials_path).exists():
        try:
            with open(config.credentials_path, "r", encoding="utf-8") as f:
                stored = (json.load(f) or {}).get("browserstack") or {}
            has_credentials = bool(stored.get("username") and (stored.get("accessKey") or stored.get("access_key")))
        except (OSError, ValueError, AttributeError):
            has_credentials = False
    _check(has_credentials, "BrowserStack credentials (cloud runs)")

    print()
    print("✅ Ready to run tests" if healthy else "❌ Environment needs attention")
    return 0 if healthy else 1


def cmd_version(args: argparse.Namespace) -> int:
    print(f"QA Workbench {__version__}")
    if args.verbose:
        print(f"Python {sys.version.split()[0]}")
        print(f"Platform {sys.platform}")
    return 0


def create_main_parser() -> argparse.ArgumentParser:
    """Create main CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="qa-workbench",
        description="QA Workbench - test execution and failure forensics",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  qa-workbench run create-sales-order --workspace ~/workspaces/d365
  qa-workbench run tests/d365/specs/login/login.spec.ts --mode cloud --target "Windows 11 Chrome"
  qa-workbench runs --limit 10
  qa-workbench tests --json
  qa-workbench locators set "role:page.getByRole('button',{name:'OK'})" healthy
  qa-workbench health
        """,
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Enable verbose output")

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    run_parser = subparsers.add_parser("run", help="Run a test and stream its output")
    run_parser.add_argument("spec", help="Spec path or test name")
    run_parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: .)")
    run_parser.add_argument(
        "--mode", choices=[m.value for m in RunMode], default=RunMode.LOCAL.value, help="Execution mode"
    )
    run_parser.add_argument("--target", help="Cloud browser/device target")
    run_parser.add_argument("--dataset", action="append", help="Dataset row id (repeatable)")
    run_parser.set_defaults(func=cmd_run)

    runs_parser = subparsers.add_parser("runs", help="List run history")
    runs_parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: .)")
    runs_parser.add_argument("--limit", "-n", type=int, default=None, help="Show at most N runs")
    runs_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    runs_parser.set_defaults(func=cmd_runs)

    tests_parser = subparsers.add_parser("tests", help="List tests with their last run")
    tests_parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: .)")
    tests_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    tests_parser.set_defaults(func=cmd_tests)

    locators_parser = subparsers.add_parser("locators", help="Show or set locator health")
    locators_parser.add_argument("--workspace", "-w", default=".", help="Workspace root (default: .)")
    locators_parser.add_argument("--json", action="store_true", help="Print raw JSON")
    locator_commands = locators_parser.add_subparsers(dest="locators_command")
    set_parser = locator_commands.add_parser("set", help="Set a locator's status")
    set_parser.add_argument("key", help="Locator key, '<type>:<locator>'")
    set_parser.add_argument("state", choices=[s.value for s in LocatorState])
    set_parser.add_argument("--note", help="Status note")
    set_parser.add_argument("--test", help="Test that produced this status")
    locators_parser.set_defaults(func=cmd_locators)

    forensics_parser = subparsers.add_parser("forensics", help="Reporter hook (payload on stdin)")
    forensics_parser.set_defaults(func=cmd_forensics)

    health_parser = subparsers.add_parser("health", help="Check the local environment")
    health_parser.set_defaults(func=cmd_health)

    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.add_argument("--verbose", "-v", action="store_true", help="Show detailed version information")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(args: Optional[List[str]] = None) -> int:
    """Main CLI entry point."""
    parser = create_main_parser()

    if args is None:
        args = sys.argv[1:]

    parsed_args = parser.parse_args(args)

    if not hasattr(parsed_args, "func"):
        parser.print_help()
        return 1

    return parsed_args.func(parsed_args)


if __name__ == "__main__":
    sys.exit(main())
