from __future__ import annotations

import asyncio
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Callable, TypedDict

from langgraph.graph import END, START, StateGraph

from .errors import SessionConflict, SpecError
from .executor import as_executor
from .graph import DependencyGraph
from .models import (
    Batch,
    DependencyPolicy,
    ExecutionSession,
    ExecutorRequest,
    ExecutorResult,
    IterationCap,
    SessionStatus,
    StopReason,
    WorkItem,
    WorkSpec,
    parse_iteration_cap,
)
from .settings import RuntimeSettings
from .spec_store import load_spec, save_spec, spec_hash, validate_spec
from .state_store import ExecutionStateStore

logger = logging.getLogger(__name__)


class ExecutionGraphState(TypedDict, total=False):
    batch_index: int
    done: bool


class Orchestrator:
    """Drives a validated spec through its batch plan, one barrier per batch.

    The loop is a LangGraph state machine:
    plan -> check_stop -> (run_batch -> check_stop)* -> finalize.
    """

    def __init__(
        self,
        spec_path: str | Path,
        executor: Callable[[ExecutorRequest], Any],
        *,
        state_dir: str | Path | None = None,
        settings: RuntimeSettings | None = None,
        policy: DependencyPolicy | None = None,
        max_concurrency: int | None = None,
    ) -> None:
        self.settings = settings if settings is not None else RuntimeSettings.from_env()
        self.spec_path = Path(spec_path)
        root = Path(state_dir) if state_dir is not None else self.spec_path.parent
        self.state_store = ExecutionStateStore(root)
        self.executor = as_executor(executor)
        self.policy = policy if policy is not None else self.settings.policy
        self.max_concurrency = max_concurrency if max_concurrency is not None else self.settings.max_concurrency
        if self.max_concurrency < 0:
            raise ValueError(f"max_concurrency must be >= 0, got: {self.max_concurrency}")
        self.spec: WorkSpec | None = None
        self.batches: list[Batch] = []
        self._spec_lock: asyncio.Lock | None = None
        self.graph = self._build_graph().compile()

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    async def execute(
        self,
        max_iterations: IterationCap | int | str | None = None,
        *,
        spec: WorkSpec | None = None,
    ) -> ExecutionSession:
        """Validate, open (or resume) a session and run every batch.

        Spec errors propagate before any session state is written.
        ``max_iterations`` defaults to the configured cap; pass
        ``"unbounded"`` or ``Unbounded()`` to lift it.
        """
        cap = self.settings.iteration_cap if max_iterations is None else parse_iteration_cap(max_iterations)
        self._spec_lock = asyncio.Lock()

        if spec is not None:
            validate_spec(spec)
            existing = self._ensure_no_conflict()
            if existing is not None:
                self._carry_recorded_outcomes(spec, existing)
            await asyncio.to_thread(save_spec, spec, self.spec_path)
            self.spec = spec
        else:
            self.spec = load_spec(self.spec_path)

        self._open_session(cap)
        recursion_limit = max(self.settings.recursion_limit, 2 * len(self.spec.items) + 10)
        await self.graph.ainvoke(
            {"batch_index": 0, "done": False},
            config={"recursion_limit": recursion_limit},
        )
        session = self.state_store.current()
        if session is None:
            raise RuntimeError(f"session record vanished from {self.state_store.session_path}")
        return session

    def run(
        self,
        max_iterations: IterationCap | int | str | None = None,
        *,
        spec: WorkSpec | None = None,
    ) -> ExecutionSession:
        return asyncio.run(self.execute(max_iterations, spec=spec))

    def get_status(self) -> str:
        return format_status(self.state_store, self.spec)

    # ------------------------------------------------------------------
    # Session setup
    # ------------------------------------------------------------------

    def _ensure_no_conflict(self) -> ExecutionSession | None:
        existing = self.state_store.load()
        if existing is None:
            return None
        if existing.is_terminal:
            raise SessionConflict(
                f"Session {existing.session_id} already finished with status "
                f"'{existing.status.value}'; clear it before starting a new one"
            )
        if Path(existing.spec_path).resolve() != self.spec_path.resolve():
            raise SessionConflict(
                f"Session {existing.session_id} is running against {existing.spec_path}, not {self.spec_path}"
            )
        return existing

    def _carry_recorded_outcomes(self, spec: WorkSpec, session: ExecutionSession) -> None:
        """Copy passes/notes of already-attempted items from the file onto *spec*."""
        try:
            recorded = load_spec(self.spec_path)
        except SpecError as exc:
            logger.warning("Cannot read recorded outcomes from %s: %s", self.spec_path, exc)
            return
        previous = {item.id: item for item in recorded.items}
        attempted = session.attempted_ids
        for item in spec.items:
            if item.id in attempted and item.id in previous:
                item.passes = previous[item.id].passes
                item.notes = previous[item.id].notes

    def _open_session(self, cap: IterationCap) -> ExecutionSession:
        assert self.spec is not None
        existing = self._ensure_no_conflict()
        if existing is None:
            return self.state_store.initialize(cap, self.spec_path, spec_hash=spec_hash(self.spec))

        logger.info(
            "Resuming session %s: %d passed, %d failed, iteration %d",
            existing.session_id,
            len(existing.completed_ids),
            len(existing.failed_ids),
            existing.current_iteration,
        )
        if existing.in_progress_id:
            logger.warning("Item %s was in progress when the session stopped; it will run again", existing.in_progress_id)
        if self.state_store.has_spec_changed():
            logger.warning("Spec %s changed since session %s started", self.spec_path, existing.session_id)
        self.state_store.validate_spec_still_exists()
        return existing

    # ------------------------------------------------------------------
    # Graph
    # ------------------------------------------------------------------

    def _build_graph(self) -> StateGraph:
        graph = StateGraph(ExecutionGraphState)
        graph.add_node("plan", self._plan_node)
        graph.add_node("check_stop", self._check_stop_node)
        graph.add_node("run_batch", self._run_batch_node)
        graph.add_node("finalize", self._finalize_node)

        graph.add_edge(START, "plan")
        graph.add_edge("plan", "check_stop")
        graph.add_conditional_edges(
            "check_stop",
            self._stop_route,
            {
                "run_batch": "run_batch",
                "finalize": "finalize",
            },
        )
        graph.add_edge("run_batch", "check_stop")
        graph.add_edge("finalize", END)
        return graph

    def _plan_node(self, _state: ExecutionGraphState) -> dict[str, Any]:
        assert self.spec is not None
        dependency_graph = DependencyGraph(self.spec)
        self.batches = dependency_graph.generate_batches()
        summary = dependency_graph.get_execution_summary()
        self.state_store.update(total_batches=len(self.batches))
        logger.info(
            "Starting execution of %d items in %d batches (max parallel %d, critical path %s)",
            summary.total_items,
            summary.batch_count,
            summary.max_parallelism,
            " -> ".join(summary.critical_path),
        )
        return {"batch_index": 0, "done": False}

    def _check_stop_node(self, state: ExecutionGraphState) -> dict[str, Any]:
        if state.get("batch_index", 0) >= len(self.batches):
            return {"done": True}
        session = self._session()
        return {"done": self._should_stop(session)}

    def _should_stop(self, session: ExecutionSession) -> bool:
        assert self.spec is not None
        cap = session.iteration_cap
        if cap.reached(session.current_iteration):
            logger.warning("Max iterations (%s) reached", cap)
            self.state_store.set_status(SessionStatus.FAILED, StopReason.ITERATION_CAP)
            return True

        if len(session.attempted_ids) >= len(self.spec.items):
            return True

        timeout = self.settings.session_timeout_s
        if timeout:
            elapsed = (datetime.now(UTC) - session.start_time).total_seconds()
            if elapsed >= timeout:
                logger.warning("Session timeout (%ss) reached after %.0fs", timeout, elapsed)
                self.state_store.set_status(SessionStatus.FAILED, StopReason.TIMEOUT)
                return True
        return False

    def _stop_route(self, state: ExecutionGraphState) -> str:
        if state.get("done"):
            return "finalize"
        return "run_batch"

    async def _run_batch_node(self, state: ExecutionGraphState) -> dict[str, Any]:
        index = state.get("batch_index", 0)
        await self._execute_batch(self.batches[index])
        return {"batch_index": index + 1}

    def _finalize_node(self, _state: ExecutionGraphState) -> dict[str, Any]:
        assert self.spec is not None
        session = self._session()
        if session.status == SessionStatus.RUNNING:
            unfinished = session.failed_ids or session.skipped_ids
            session = self.state_store.set_status(
                SessionStatus.FAILED if unfinished else SessionStatus.COMPLETED
            ) or session
        logger.info(format_outcome(session, len(self.spec.items)))
        return {"done": True}

    # ------------------------------------------------------------------
    # Batch and item execution
    # ------------------------------------------------------------------

    async def _execute_batch(self, batch: Batch) -> None:
        session = self._session()
        pending = [item for item in batch.items if item.id not in session.attempted_ids]
        if len(pending) < len(batch.items):
            logger.info(
                "Batch %d: skipping %d item(s) already attempted",
                batch.batch_number,
                len(batch.items) - len(pending),
            )

        runnable: list[WorkItem] = []
        for item in pending:
            blocker = self._blocking_dependency(item, session)
            if blocker is None:
                runnable.append(item)
            else:
                await self._record_skip(item, blocker)

        if len(runnable) > 1:
            logger.info("Batch %d: running in parallel: %s", batch.batch_number, ", ".join(i.id for i in runnable))
            semaphore = asyncio.Semaphore(self.max_concurrency) if self.max_concurrency > 0 else None
            await asyncio.gather(*(self._execute_item(item, semaphore) for item in runnable))
        elif runnable:
            logger.info("Batch %d: running sequential: %s", batch.batch_number, runnable[0].id)
            await self._execute_item(runnable[0])

        self.state_store.update(current_batch=batch.batch_number)

    def _blocking_dependency(self, item: WorkItem, session: ExecutionSession) -> str | None:
        if self.policy != DependencyPolicy.BLOCKING:
            return None
        unfinished = {*session.failed_ids, *session.skipped_ids}
        for dep in item.dependencies:
            if dep in unfinished:
                return dep
        return None

    async def _execute_item(self, item: WorkItem, semaphore: asyncio.Semaphore | None = None) -> ExecutorResult:
        if semaphore is None:
            return await self._invoke(item)
        async with semaphore:
            return await self._invoke(item)

    async def _invoke(self, item: WorkItem) -> ExecutorResult:
        self.state_store.set_in_progress(item.id)
        logger.info("Executing %s: %s (role: %s)", item.id, item.title, item.executor_role)
        try:
            result = await self.executor(ExecutorRequest.from_item(item))
        except Exception as exc:  # noqa: BLE001 - executor failures are item outcomes.
            logger.warning("Executor raised for %s: %s", item.id, exc)
            result = ExecutorResult(item_id=item.id, success=False, error=f"{type(exc).__name__}: {exc}")
        await self._record_result(item, result)
        return result

    async def _record_result(self, item: WorkItem, result: ExecutorResult) -> None:
        assert self.spec is not None
        self.state_store.mark_item_result(item.id, result.success, result.error)
        item.passes = result.success
        item.notes = result.notes
        await self._write_spec()
        if self._session().in_progress_id == item.id:
            self.state_store.set_in_progress(None)
        if result.success:
            logger.info("%s PASSED", item.id)
        else:
            logger.info("%s FAILED: %s", item.id, result.error)

    async def _record_skip(self, item: WorkItem, blocker: str) -> None:
        assert self.spec is not None
        reason = f"Blocked by failed dependency {blocker}"
        self.state_store.mark_item_skipped(item.id, reason)
        item.passes = False
        item.notes = reason
        await self._write_spec()
        logger.info("%s SKIPPED: %s", item.id, reason)

    async def _write_spec(self) -> None:
        # Snapshot on the loop; the lock keeps file writes in snapshot order.
        assert self.spec is not None and self._spec_lock is not None
        snapshot = self.spec.model_copy(deep=True)
        async with self._spec_lock:
            await asyncio.to_thread(save_spec, snapshot, self.spec_path)

    def _session(self) -> ExecutionSession:
        session = self.state_store.current()
        if session is None:
            raise RuntimeError(f"no session record under {self.state_store.root}")
        return session


def format_status(store: ExecutionStateStore, spec: WorkSpec | None = None) -> str:
    """Multi-line report of the session persisted in *store*.

    When *spec* is omitted the spec recorded in the session is loaded for the
    item and batch totals; if that fails the report falls back to the session
    counters.
    """
    session = store.load()
    if session is None:
        return "Not started"

    if spec is None:
        try:
            spec = load_spec(Path(session.spec_path))
        except ValueError as exc:
            logger.warning("Status without spec details: %s", exc)
    if spec is not None:
        total_items, total_batches = len(spec.items), len(DependencyGraph(spec).generate_batches())
    else:
        total_items, total_batches = len(session.attempted_ids), session.total_batches

    status = session.status.value
    if session.stop_reason is not None:
        status += f" ({session.stop_reason.value})"
    lines = [
        "Execution Status:",
        "========================",
        f"Session: {session.session_id}",
        f"Status: {status}",
        f"Progress: {len(session.completed_ids)}/{total_items} items passed, {len(session.failed_ids)} failed",
        f"Batch: {session.current_batch}/{total_batches}",
        f"Iteration: {session.current_iteration}/{session.max_iterations}",
        "",
        f"Completed: [{', '.join(session.completed_ids) or 'None'}]",
        f"Failed: [{', '.join(session.failed_ids) or 'None'}]",
    ]
    if session.skipped_ids:
        lines.append(f"Skipped: [{', '.join(session.skipped_ids)}]")
    lines.extend(
        [
            f"In Progress: {session.in_progress_id or 'None'}",
            "",
            f"Duration: {store.get_duration(session)}",
            f"Last Activity: {session.last_activity_time.isoformat()}",
        ]
    )
    return "\n".join(lines)


def format_outcome(session: ExecutionSession, total_items: int) -> str:
    """User-facing summary of how a session ended."""
    attempted = len(session.attempted_ids)
    passed = len(session.completed_ids)
    if session.stop_reason == StopReason.ITERATION_CAP:
        return (
            f"Stopped at the iteration cap ({session.max_iterations}): "
            f"{attempted}/{total_items} items attempted, {passed} passed. "
            "Clear the session and raise --max-iterations to run the remaining items."
        )
    if session.stop_reason == StopReason.TIMEOUT:
        return (
            f"Stopped at the session timeout: {attempted}/{total_items} items attempted, {passed} passed."
        )
    if session.status == SessionStatus.COMPLETED:
        return f"Execution completed: {passed}/{total_items} items passed."

    lines = [f"Execution failed: {passed}/{total_items} items passed."]
    if session.failed_ids:
        lines.append(f"Failed items: {', '.join(session.failed_ids)}")
    if session.skipped_ids:
        lines.append(f"Skipped items: {', '.join(session.skipped_ids)}")
    return "\n".join(lines)
