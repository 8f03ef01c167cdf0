from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence

from .errors import CyclicDependency, PlanInvariantError
from .models import Batch, ExecutionSummary, WorkItem, WorkSpec

logger = logging.getLogger(__name__)


def find_cycle(items: Iterable[WorkItem]) -> list[str] | None:
    """Return the ids of one dependency cycle, or ``None`` for a DAG.

    Depth-first over items in specification order, following dependency
    edges; the returned list starts at the first id re-entered on the
    current path. Unknown dependency ids are ignored here.
    """
    edges: dict[str, list[str]] = {}
    for item in items:
        edges.setdefault(item.id, list(item.dependencies))

    visiting, done = 1, 2
    marks: dict[str, int] = {}
    for root in edges:
        if root in marks:
            continue
        marks[root] = visiting
        path = [root]
        stack = [iter(edges[root])]
        while stack:
            advanced = False
            for child in stack[-1]:
                if child not in edges:
                    continue
                mark = marks.get(child)
                if mark == visiting:
                    return path[path.index(child):]
                if mark is None:
                    marks[child] = visiting
                    path.append(child)
                    stack.append(iter(edges[child]))
                    advanced = True
                    break
            if not advanced:
                marks[path.pop()] = done
                stack.pop()
    return None


def check_acyclic(items: Iterable[WorkItem]) -> None:
    cycle = find_cycle(items)
    if cycle is not None:
        raise CyclicDependency(cycle)


def _first_deepest(ids: Iterable[str], depths: dict[str, int]) -> str:
    """Deepest id; the earliest one wins ties."""
    best_id: str | None = None
    for item_id in ids:
        if best_id is None or depths[item_id] > depths[best_id]:
            best_id = item_id
    if best_id is None:
        raise PlanInvariantError("critical path requested over an empty id set")
    return best_id


class DependencyGraph:
    """Static execution plan over a validated ``WorkSpec``."""

    def __init__(self, spec: WorkSpec) -> None:
        self.spec = spec
        self._order = {item.id: index for index, item in enumerate(spec.items)}

    def generate_batches(self) -> list[Batch]:
        """Partition items into waves whose dependencies sit in earlier waves.

        The plan assumes every item eventually succeeds and is never
        recomputed in response to runtime failures.
        """
        batches: list[Batch] = []
        resolved: set[str] = set()
        remaining = list(self.spec.items)
        batch_number = 1

        while remaining:
            ready = [item for item in remaining if all(dep in resolved for dep in item.dependencies)]
            if not ready:
                stuck = ", ".join(item.id for item in remaining)
                raise PlanInvariantError(f"Unable to resolve dependencies for items: {stuck}")

            # Display order only; callers get no ordering guarantee within a batch.
            ready.sort(key=lambda item: -item.priority)
            batches.append(Batch(batch_number=batch_number, items=ready))
            resolved.update(item.id for item in ready)
            remaining = [item for item in remaining if item.id not in resolved]
            batch_number += 1

        return batches

    def find_critical_path(self) -> list[str]:
        """Longest dependency chain by hop count, root first."""
        if not self.spec.items:
            return []

        depths = self._depths()
        current = _first_deepest(self.spec.ids(), depths)
        path = [current]
        while True:
            dependencies = self.spec.item(current).dependencies
            if not dependencies:
                break
            current = _first_deepest(self._in_spec_order(dependencies), depths)
            path.append(current)
        path.reverse()
        return path

    def _in_spec_order(self, ids: Sequence[str]) -> list[str]:
        return sorted(ids, key=lambda item_id: self._order[item_id])

    def _depths(self) -> dict[str, int]:
        # Batches are topologically ordered, so every dependency depth is known first.
        depths: dict[str, int] = {}
        for batch in self.generate_batches():
            for item in batch.items:
                depths[item.id] = 1 + max((depths[dep] for dep in item.dependencies), default=0)
        logger.debug("dependency depths: %s", depths)
        return depths

    def get_execution_summary(self) -> ExecutionSummary:
        batches = self.generate_batches()
        return ExecutionSummary(
            total_items=len(self.spec.items),
            max_parallelism=max((len(batch.items) for batch in batches), default=0),
            batch_count=len(batches),
            critical_path=self.find_critical_path(),
        )

    def visualize(self) -> str:
        lines: list[str] = ["Dependency Graph:", ""]
        for item in self.spec.items:
            arrow = f" <- [{', '.join(item.dependencies)}]" if item.dependencies else ""
            lines.append(
                f"  {item.id}: {item.title} (priority: {item.priority}, role: {item.executor_role}){arrow}"
            )

        lines.extend(["", "Execution Plan:"])
        for batch in self.generate_batches():
            mode = "parallel" if batch.can_run_in_parallel else "sequential"
            lines.append(f"  Batch {batch.batch_number} ({mode}): {', '.join(batch.ids)}")

        summary = self.get_execution_summary()
        lines.extend(
            [
                "",
                "Summary:",
                f"  Total items: {summary.total_items}",
                f"  Max parallel: {summary.max_parallelism}",
                f"  Batches: {summary.batch_count}",
                f"  Critical path: [{' -> '.join(summary.critical_path)}]",
            ]
        )
        return "\n".join(lines)
