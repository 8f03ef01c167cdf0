"""Dependency-aware batch scheduling and resumable execution of work items.

A work spec lists items with dependencies. :mod:`spec_store` validates it,
:mod:`graph` levels it into parallel batches, :mod:`orchestrator` runs the
batches through an injected executor, and :mod:`state_store` checkpoints the
session so an interrupted run can resume.
"""

from importlib.metadata import version

from .errors import (
    CyclicDependency,
    DanglingDependency,
    InvalidSpec,
    ItemNotFound,
    MalformedSpec,
    PlanInvariantError,
    SessionConflict,
    SpecError,
    SpecNotFound,
    StorybatchError,
    ValidationIssue,
)
from .executor import AgentExecutor, CommandExecutor, as_executor, load_executor, render_prompt
from .graph import DependencyGraph
from .models import (
    Batch,
    Bounded,
    DependencyPolicy,
    ExecutionSession,
    ExecutionSummary,
    ExecutorRequest,
    ExecutorResult,
    IterationCap,
    SessionStatus,
    StopReason,
    Unbounded,
    WorkItem,
    WorkSpec,
    parse_iteration_cap,
)
from .orchestrator import Orchestrator, format_outcome, format_status
from .settings import RuntimeSettings
from .spec_store import load_spec, parse_spec, save_spec, spec_hash, update_item, validate_spec
from .state_store import ExecutionStateStore


def get_version() -> str:
    try:
        return version(__name__)
    except Exception:
        return "0.0.0"


__all__ = [
    "AgentExecutor",
    "Batch",
    "Bounded",
    "CommandExecutor",
    "CyclicDependency",
    "DanglingDependency",
    "DependencyGraph",
    "DependencyPolicy",
    "ExecutionSession",
    "ExecutionStateStore",
    "ExecutionSummary",
    "ExecutorRequest",
    "ExecutorResult",
    "InvalidSpec",
    "ItemNotFound",
    "IterationCap",
    "MalformedSpec",
    "Orchestrator",
    "PlanInvariantError",
    "RuntimeSettings",
    "SessionConflict",
    "SessionStatus",
    "SpecError",
    "SpecNotFound",
    "StopReason",
    "StorybatchError",
    "Unbounded",
    "ValidationIssue",
    "WorkItem",
    "WorkSpec",
    "as_executor",
    "format_outcome",
    "format_status",
    "get_version",
    "load_executor",
    "load_spec",
    "parse_iteration_cap",
    "parse_spec",
    "render_prompt",
    "save_spec",
    "spec_hash",
    "update_item",
    "validate_spec",
]
