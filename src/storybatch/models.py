from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .errors import ItemNotFound


UNBOUNDED = "unbounded"


class SessionStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StopReason(str, Enum):
    ITERATION_CAP = "iteration_cap"
    TIMEOUT = "timeout"


class DependencyPolicy(str, Enum):
    """How a failed item affects items that depend on it."""

    OPTIMISTIC = "optimistic"
    BLOCKING = "blocking"


class _Document(BaseModel):
    """Base for JSON documents stored on disk with camelCase keys."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_json(self) -> str:
        return self.model_dump_json(indent=2, by_alias=True)


class WorkItem(_Document):
    id: str = ""
    title: str = ""
    description: str = ""
    acceptance_criteria: list[str] = Field(default_factory=list)
    priority: int = 0
    executor_role: str = ""
    dependencies: list[str] = Field(default_factory=list)
    passes: bool = False
    notes: str = ""


class WorkSpec(_Document):
    project_name: str = ""
    branch_label: str = ""
    description: str = ""
    items: list[WorkItem] = Field(default_factory=list)

    def ids(self) -> list[str]:
        return [item.id for item in self.items]

    def item(self, item_id: str) -> WorkItem:
        for item in self.items:
            if item.id == item_id:
                return item
        raise ItemNotFound(item_id)


@dataclass(frozen=True)
class Batch:
    batch_number: int
    items: list[WorkItem] = field(default_factory=list)

    @property
    def can_run_in_parallel(self) -> bool:
        return len(self.items) > 1

    @property
    def ids(self) -> list[str]:
        return [item.id for item in self.items]


@dataclass(frozen=True)
class ExecutionSummary:
    total_items: int
    max_parallelism: int
    batch_count: int
    critical_path: list[str]


# ---------------------------------------------------------------------------
# Iteration cap
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class Bounded:
    limit: int

    def __post_init__(self) -> None:
        if self.limit < 1:
            raise ValueError(f"iteration cap must be >= 1, got: {self.limit}")

    def reached(self, iterations: int) -> bool:
        return iterations >= self.limit

    def __str__(self) -> str:
        return str(self.limit)


@dataclass(frozen=True)
class Unbounded:
    def reached(self, iterations: int) -> bool:
        return False

    def __str__(self) -> str:
        return UNBOUNDED


IterationCap = Bounded | Unbounded


def parse_iteration_cap(value: IterationCap | int | str | None) -> IterationCap:
    """Normalize user or on-disk input into an ``IterationCap``.

    ``None`` and ``"unbounded"`` mean no cap; integers (or numeric strings)
    must be at least 1.
    """
    if isinstance(value, (Bounded, Unbounded)):
        return value
    if value is None:
        return Unbounded()
    if isinstance(value, bool):
        raise ValueError(f"iteration cap must be an integer or '{UNBOUNDED}', got: {value!r}")
    if isinstance(value, int):
        return Bounded(value)
    raw = str(value).strip().lower()
    if raw == UNBOUNDED:
        return Unbounded()
    try:
        return Bounded(int(raw))
    except ValueError as exc:
        raise ValueError(f"iteration cap must be an integer or '{UNBOUNDED}', got: {value!r}") from exc


# ---------------------------------------------------------------------------
# Session record
# ---------------------------------------------------------------------------


def _utcnow() -> datetime:
    return datetime.now(UTC)


class ExecutionSession(_Document):
    session_id: str
    start_time: datetime = Field(default_factory=_utcnow)
    current_iteration: int = 0
    max_iterations: int | Literal["unbounded"] = UNBOUNDED
    current_batch: int = 0
    total_batches: int = 0
    completed_ids: list[str] = Field(default_factory=list)
    failed_ids: list[str] = Field(default_factory=list)
    skipped_ids: list[str] = Field(default_factory=list)
    in_progress_id: str | None = None
    status: SessionStatus = SessionStatus.RUNNING
    stop_reason: StopReason | None = None
    last_activity_time: datetime = Field(default_factory=_utcnow)
    spec_path: str
    spec_hash: str | None = None

    @field_validator("max_iterations")
    @classmethod
    def _valid_cap(cls, value: int | str) -> int | Literal["unbounded"]:
        return cap_to_record(parse_iteration_cap(value))

    @property
    def iteration_cap(self) -> IterationCap:
        return parse_iteration_cap(self.max_iterations)

    @property
    def attempted_ids(self) -> set[str]:
        return {*self.completed_ids, *self.failed_ids, *self.skipped_ids}

    @property
    def is_terminal(self) -> bool:
        return self.status != SessionStatus.RUNNING

    def touch(self) -> None:
        self.last_activity_time = _utcnow()


def cap_to_record(cap: IterationCap) -> int | Literal["unbounded"]:
    if isinstance(cap, Bounded):
        return cap.limit
    return UNBOUNDED


# ---------------------------------------------------------------------------
# Executor boundary
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ExecutorRequest:
    id: str
    title: str
    description: str
    acceptance_criteria: list[str]
    dependencies: list[str]
    executor_role: str

    @classmethod
    def from_item(cls, item: WorkItem) -> "ExecutorRequest":
        return cls(
            id=item.id,
            title=item.title,
            description=item.description,
            acceptance_criteria=list(item.acceptance_criteria),
            dependencies=list(item.dependencies),
            executor_role=item.executor_role,
        )


@dataclass(frozen=True)
class ExecutorResult:
    item_id: str
    success: bool
    output: str = ""
    error: str | None = None
    timestamp: datetime = field(default_factory=_utcnow)

    @property
    def notes(self) -> str:
        if self.success:
            return self.output
        return self.error or "Unknown error"
