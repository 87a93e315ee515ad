"""
Run orchestration.

``RunOrchestrator`` drives one test run from request to a persisted,
terminal record:

    resolve spec -> prepare workspace -> persist ``running`` record ->
    spawn engine -> stream output -> post-process -> ``finished`` event

At most one engine process is tracked per orchestrator; starting a run
terminates the previous one first. Post-processing of a run always runs to
completion, even when a newer run has already started; scratch and result
directories are tagged by run id so the two never share inputs.
"""

import asyncio
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import psutil

from ..analysis.forensics import read_failure_artifact
from ..analysis.locator_health import LocatorHealthFeedback
from ..analysis.models import AssertionFailure
from ..core.config import Config
from ..core.exceptions import SpawnError, SpecResolutionError, WorkbenchError
from ..core.logging_config import get_logger, log_performance, run_context
from ..persistence.bundle_meta import PerTestMetaStore
from ..persistence.run_index import RunIndexStore
from ..reporting.generator import ReportGenerator
from ..workspace.bootstrap import WorkspaceBootstrapper
from ..workspace.layout import ResolvedSpec, WorkspaceLayout
from .artifacts import TraceRelocator
from .models import RunEvent, RunMode, RunRecord, RunRequest, RunStatus
from .runtime import EngineLauncher
from .stream import STDERR, CloudOutputScanner, pump_output

EventListener = Callable[[RunEvent], None]
TestUpdatedListener = Callable[[str, Dict[str, Any]], None]


class _ProcessHandle:
    """The engine process owned by the orchestrator."""

    def __init__(self, process: asyncio.subprocess.Process, run_id: str):
        self.process = process
        self.run_id = run_id

    @property
    def pid(self) -> int:
        return self.process.pid

    @property
    def running(self) -> bool:
        return self.process.returncode is None

    def terminate(self) -> None:
        """Kill the process and everything it spawned (npx, node, browsers)."""
        if not self.running:
            return
        try:
            children = psutil.Process(self.pid).children(recursive=True)
        except psutil.Error:
            children = []
        for child in children:
            try:
                child.kill()
            except psutil.Error:
                pass
        try:
            self.process.kill()
        except ProcessLookupError:
            pass


class _RunContext:
    """State carried from spawn through post-processing."""

    def __init__(self, request: RunRequest, layout: WorkspaceLayout, resolved: ResolvedSpec, record: RunRecord):
        self.request = request
        self.layout = layout
        self.resolved = resolved
        self.record = record
        self.scanner = CloudOutputScanner() if request.run_mode == RunMode.CLOUD else None


class RunOrchestrator:
    """
    Starts, supervises and post-processes test runs.

    Collaborators are injectable; by default they are built from ``config``.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        launcher: Optional[EngineLauncher] = None,
        bootstrapper: Optional[WorkspaceBootstrapper] = None,
        report_generator: Optional[ReportGenerator] = None,
    ):
        self.config = config or Config()
        self.launcher = launcher or EngineLauncher(self.config)
        self.bootstrapper = bootstrapper or WorkspaceBootstrapper(self.config, self.launcher)
        self.report_generator = report_generator or ReportGenerator(timeout=self.config.report_timeout)
        self.logger = get_logger(__name__)

        self._handle: Optional[_ProcessHandle] = None
        self._listeners: List[EventListener] = []
        self._test_listeners: List[TestUpdatedListener] = []
        self._tasks: Dict[str, asyncio.Task] = {}
        self._results: Dict[str, Optional[RunRecord]] = {}

    def apply_config(self, config: Config) -> None:
        """
        Switch to a reloaded configuration.

        Work already in flight keeps the values it started with; installs,
        spawns, reports and locator notes started afterwards use ``config``.
        """
        self.config = config
        self.launcher.config = config
        self.bootstrapper.config = config
        self.report_generator.timeout = config.report_timeout
        self.logger.info(
            "Configuration applied",
            extra={"metadata": {"report_timeout": config.report_timeout, "note_max_length": config.note_max_length}},
        )

    # Listeners

    def subscribe(self, listener: EventListener) -> Callable[[], None]:
        """Receive run events from now on. Returns an unsubscribe function."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def on_test_updated(self, listener: TestUpdatedListener) -> Callable[[], None]:
        """Receive ``(test_name, meta)`` after a run updated a test's metadata."""
        self._test_listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._test_listeners:
                self._test_listeners.remove(listener)

        return unsubscribe

    def _emit(self, event: RunEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                self.logger.error("Run event listener failed", exc_info=True, extra={"run_id": event.run_id})

    def _notify_test_updated(self, test_name: str, meta: Dict[str, Any]) -> None:
        for listener in list(self._test_listeners):
            try:
                listener(test_name, meta)
            except Exception:
                self.logger.error("Test update listener failed", exc_info=True)

    # Process handle

    @property
    def active_run_id(self) -> Optional[str]:
        if self._handle is not None and self._handle.running:
            return self._handle.run_id
        return None

    def _replace_handle(self, handle: Optional[_ProcessHandle]) -> None:
        """Terminate the tracked process, then track ``handle``."""
        previous, self._handle = self._handle, None
        if previous is not None and previous.running:
            self.logger.info(
                "Terminating previous run",
                extra={"run_id": previous.run_id, "metadata": {"pid": previous.pid}},
            )
            previous.terminate()
        self._handle = handle

    def stop(self) -> bool:
        """Kill the tracked engine process. Returns False when none is running."""
        if self._handle is None or not self._handle.running:
            return False
        self._replace_handle(None)
        return True

    # Run lifecycle

    async def start(self, request: RunRequest) -> str:
        """
        Start a run and return its id once the engine is spawned.

        Resolution, preparation and spawn failures do not raise; they are
        reported as ``error`` events (and, after resolution, as a ``failed``
        record).
        """
        run_id = str(uuid.uuid4())
        log = get_logger(__name__, run_id=run_id)

        self._replace_handle(None)

        layout = WorkspaceLayout(request.workspace_path)
        try:
            resolved = layout.resolve_spec(request.spec_path_or_test_name)
        except SpecResolutionError as e:
            log.warning(e.message, extra={"metadata": e.to_dict()})
            self._results[run_id] = None
            self._emit(RunEvent.error(run_id, f"Test file not found: {request.spec_path_or_test_name}"))
            return run_id

        record = RunRecord(
            run_id=run_id,
            test_name=resolved.test_name,
            spec_rel_path=resolved.spec_rel_path,
            source=request.run_mode,
        )
        run_index = RunIndexStore(layout.run_index_path)

        try:
            credentials = self.bootstrapper.ensure_auth_state(layout, request.run_mode)
            await self.bootstrapper.ensure_execution_environment(layout, request.run_mode)
        except Exception as e:
            message = e.message if isinstance(e, WorkbenchError) else f"Failed to prepare workspace: {e}"
            log.error(message, exc_info=not isinstance(e, WorkbenchError))
            self._fail_before_spawn(run_index, record, message)
            return run_id

        self._persist(run_index, record)

        try:
            launch = self.launcher.build(request, layout, resolved, run_id, credentials)
            process = await self.launcher.spawn(launch, run_id)
        except SpawnError as e:
            log.error(e.message, extra={"metadata": e.to_dict()})
            self._fail_before_spawn(run_index, record, e.message)
            return run_id

        self._replace_handle(_ProcessHandle(process, run_id))
        self._emit(RunEvent.started(run_id))

        context = _RunContext(request, layout, resolved, record)
        task = asyncio.create_task(self._supervise(context, process))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(run_id, None))
        return run_id

    def _fail_before_spawn(self, run_index: RunIndexStore, record: RunRecord, message: str) -> None:
        record.finish(RunStatus.FAILED)
        self._persist(run_index, record)
        self._results[record.run_id] = record
        self._emit(RunEvent.error(record.run_id, message))
        self._emit(RunEvent.finished(record.run_id, RunStatus.FAILED, None))

    def _persist(self, run_index: RunIndexStore, record: RunRecord) -> None:
        try:
            run_index.upsert(record)
        except WorkbenchError as e:
            self.logger.error(
                f"Could not persist run record: {e.message}",
                extra={"run_id": record.run_id, "metadata": e.to_dict()},
            )

    async def wait(self, run_id: str) -> Optional[RunRecord]:
        """
        Wait for a run's post-processing and return its final record.

        The record is handed over once; a second wait for the same run
        returns ``None``.
        """
        task = self._tasks.get(run_id)
        if task is not None:
            await task
        return self._results.pop(run_id, None)

    async def wait_all(self) -> None:
        tasks = [t for t in self._tasks.values() if not t.done()]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    # Streaming

    def _forward_line(self, context: _RunContext, stream: str, text: str) -> None:
        run_id = context.record.run_id
        if context.scanner is not None:
            result = context.scanner.scan(text)
            if result.tunnel_error:
                self._emit(RunEvent.error(run_id, result.tunnel_error))
        if stream == STDERR:
            self._emit(RunEvent.error(run_id, text))
        else:
            self._emit(RunEvent.log(run_id, text))

    async def _supervise(self, context: _RunContext, process: asyncio.subprocess.Process) -> None:
        # Records logged while the run finishes carry its id and test name
        with run_context(run_id=context.record.run_id, test_name=context.record.test_name):
            await self._finish_run(context, process)

    async def _finish_run(self, context: _RunContext, process: asyncio.subprocess.Process) -> None:
        run_id = context.record.run_id
        log = get_logger(__name__, run_id=run_id)
        try:
            exit_code = await pump_output(
                process, lambda stream, text: self._forward_line(context, stream, text)
            )
        except Exception:
            log.error("Output streaming failed", exc_info=True)
            exit_code = await process.wait()
        finally:
            if self._handle is not None and self._handle.run_id == run_id:
                self._handle = None

        status = RunStatus.PASSED if exit_code == 0 else RunStatus.FAILED
        log.info(f"Engine exited with code {exit_code}", extra={"status": status.value})
        try:
            await self._post_process(context, status, exit_code)
        except Exception:
            log.error("Post-processing aborted", exc_info=True)
            if not context.record.is_terminal:
                context.record.finish(status)
            self._results[run_id] = context.record
            self._emit(RunEvent.finished(run_id, status, exit_code))

    # Post-processing

    def _step(self, name: str, run_id: str, func: Callable[[], Any]) -> Any:
        try:
            return func()
        except Exception:
            get_logger(__name__, run_id=run_id).error(f"Post-processing step '{name}' failed", exc_info=True)
            return None

    async def _async_step(self, name: str, run_id: str, func: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await func()
        except WorkbenchError as e:
            get_logger(__name__, run_id=run_id).warning(
                f"Post-processing step '{name}' failed: {e.message}",
                extra={"metadata": e.to_dict()},
            )
        except Exception:
            get_logger(__name__, run_id=run_id).error(f"Post-processing step '{name}' failed", exc_info=True)
        return None

    def _load_assertion_failure(self, context: _RunContext) -> Optional[AssertionFailure]:
        data = read_failure_artifact(
            context.layout,
            context.resolved.test_name,
            context.resolved.bundle_dir,
            run_id=context.record.run_id,
            started_at=context.record.started_at,
        )
        if not isinstance(data, dict) or not isinstance(data.get("assertionFailure"), dict):
            return None
        return AssertionFailure.model_validate(data["assertionFailure"])

    async def _post_process(self, context: _RunContext, status: RunStatus, exit_code: Optional[int]) -> None:
        record = context.record
        run_id = record.run_id
        test_name = context.resolved.test_name
        layout = context.layout
        start = time.time()

        record.finish(status)

        traces = self._step(
            "relocate_traces", run_id, lambda: TraceRelocator(layout, run_id).relocate(test_name)
        )
        record.trace_paths = list(traces or [])

        report_path = await self._async_step(
            "generate_report", run_id, lambda: self.report_generator.generate(layout, run_id, test_name)
        )
        if report_path:
            record.report_path = report_path

        if context.scanner is not None:
            record.cloud_session_meta = context.scanner.session_meta()

        if status == RunStatus.FAILED:
            assertion = self._step("load_failure_artifact", run_id, lambda: self._load_assertion_failure(context))
            if assertion is not None:
                record.assertion_failures = [assertion]

        self._step("update_run_index", run_id, lambda: RunIndexStore(layout.run_index_path).upsert(record))

        meta = self._step(
            "update_test_meta",
            run_id,
            lambda: PerTestMetaStore(layout).record_run(test_name, run_id, status.value),
        )
        if meta is not None:
            self._notify_test_updated(test_name, meta)

        if status == RunStatus.FAILED:
            feedback = LocatorHealthFeedback(layout, note_max_length=self.config.note_max_length)
            self._step(
                "locator_feedback",
                run_id,
                lambda: feedback.on_test_failed(
                    test_name,
                    context.resolved.bundle_dir,
                    run_id=run_id,
                    started_at=record.started_at,
                ),
            )

        self._results[run_id] = record
        log_performance(
            get_logger(__name__, run_id=run_id),
            "post_processing",
            time.time() - start,
            status=status.value,
            trace_count=len(record.trace_paths),
        )
        self._emit(RunEvent.finished(run_id, status, exit_code))
