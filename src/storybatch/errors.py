from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass


@dataclass(frozen=True)
class ValidationIssue:
    location: str
    message: str

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


class StorybatchError(Exception):
    """Base class for every error raised by storybatch."""


class SpecError(StorybatchError, ValueError):
    """The work specification cannot be used."""


class MalformedSpec(SpecError):
    """The specification document could not be read or parsed."""


class InvalidSpec(SpecError):
    """The specification parsed but failed structural validation."""

    def __init__(self, issues: Sequence[ValidationIssue], message: str | None = None) -> None:
        self.issues = list(issues)
        if message is None:
            message = "; ".join(str(issue) for issue in self.issues) or "invalid specification"
        super().__init__(message)


class DanglingDependency(InvalidSpec):
    def __init__(self, item_id: str, missing_id: str) -> None:
        self.item_id = item_id
        self.missing_id = missing_id
        super().__init__(
            [ValidationIssue(item_id, f"depends on unknown item {missing_id}")],
            message=f"Item {item_id} depends on non-existent item {missing_id}",
        )


class CyclicDependency(InvalidSpec):
    def __init__(self, cycle_ids: Sequence[str]) -> None:
        self.cycle_ids = list(cycle_ids)
        chain = " -> ".join([*self.cycle_ids, self.cycle_ids[0]]) if self.cycle_ids else "?"
        super().__init__(
            [ValidationIssue("dependencies", f"cycle {chain}")],
            message=f"Dependency graph contains a cycle: {chain}",
        )


class ItemNotFound(StorybatchError, KeyError):
    def __init__(self, item_id: str) -> None:
        self.item_id = item_id
        super().__init__(item_id)

    def __str__(self) -> str:
        return f"Work item not found: {self.item_id}"


class SpecNotFound(StorybatchError, FileNotFoundError):
    """The specification file a session refers to does not exist."""


class SessionConflict(StorybatchError, RuntimeError):
    """A session already occupies the state directory and cannot be reused."""


class PlanInvariantError(StorybatchError, RuntimeError):
    """Batch planning hit a graph that validation should have rejected."""
