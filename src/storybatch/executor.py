from __future__ import annotations

import asyncio
import importlib
import inspect
import logging
import shlex
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Protocol

from .models import ExecutorRequest, ExecutorResult, WorkItem

logger = logging.getLogger(__name__)


class AgentExecutor(Protocol):
    """Capability that carries out one work item and reports pass/fail.

    The executor, not the orchestrator, decides whether an item succeeded.
    """

    def __call__(self, request: ExecutorRequest) -> Awaitable[ExecutorResult]:
        ...


def render_prompt(item: WorkItem | ExecutorRequest) -> str:
    """Render the task text handed to an executor for *item*."""
    lines = [
        f"Story ID: {item.id}",
        f"Title: {item.title}",
        f"Description: {item.description}",
        "",
        "Acceptance Criteria:",
        *(f"  {index}. {criterion}" for index, criterion in enumerate(item.acceptance_criteria, start=1)),
        "",
        f"Dependencies: {', '.join(item.dependencies)}"
        if item.dependencies
        else "No dependencies - can start immediately",
    ]
    return "\n".join(lines)


def coerce_result(item_id: str, raw: Any) -> ExecutorResult:
    """Normalize whatever an executor returned into an ``ExecutorResult``.

    Accepts an ``ExecutorResult``, a mapping shaped like
    ``{"success": bool, "output": str}`` / ``{"success": False, "error": str}``,
    or a bare bool.
    """
    if isinstance(raw, ExecutorResult):
        return raw
    if isinstance(raw, bool):
        return ExecutorResult(item_id=item_id, success=raw)
    if isinstance(raw, Mapping):
        success = bool(raw.get("success", False))
        error = raw.get("error")
        return ExecutorResult(
            item_id=item_id,
            success=success,
            output=str(raw.get("output", "") or ""),
            error=None if success else str(error or "Unknown error"),
        )
    raise TypeError(f"executor for {item_id} returned unsupported result type {type(raw).__name__}")


def as_executor(fn: Callable[[ExecutorRequest], Any]) -> AgentExecutor:
    """Adapt a plain sync or async callable into an ``AgentExecutor``.

    Synchronous callables run in a worker thread so a batch still executes
    concurrently.
    """

    async def _call(request: ExecutorRequest) -> ExecutorResult:
        if inspect.iscoroutinefunction(fn) or inspect.iscoroutinefunction(getattr(fn, "__call__", None)):
            raw = await fn(request)
        else:
            raw = await asyncio.to_thread(fn, request)
            if inspect.isawaitable(raw):
                raw = await raw
        return coerce_result(request.id, raw)

    return _call


def load_executor(target: str) -> AgentExecutor:
    """Resolve ``"package.module:attribute"`` to an executor.

    A class attribute is instantiated with no arguments.
    """
    module_name, sep, attr = target.partition(":")
    if not sep or not module_name or not attr:
        raise ValueError(f"executor must look like 'package.module:attribute', got: {target!r}")
    module = importlib.import_module(module_name)
    obj: Any = module
    for part in attr.split("."):
        obj = getattr(obj, part)
    if inspect.isclass(obj):
        obj = obj()
    if not callable(obj):
        raise TypeError(f"executor {target!r} is not callable")
    return as_executor(obj)


@dataclass
class CommandExecutor:
    """Run an external command per item, feeding the rendered prompt on stdin.

    ``{id}`` and ``{role}`` placeholders in the command are substituted per
    item. Exit status 0 counts as success.
    """

    command: str
    cwd: Path | None = None
    env: dict[str, str] | None = None
    max_output_chars: int = 4_000
    _argv_template: list[str] = field(init=False, repr=False)

    def __post_init__(self) -> None:
        self._argv_template = shlex.split(self.command)
        if not self._argv_template:
            raise ValueError("command must be non-empty")

    def argv_for(self, request: ExecutorRequest) -> list[str]:
        return [part.replace("{id}", request.id).replace("{role}", request.executor_role) for part in self._argv_template]

    async def __call__(self, request: ExecutorRequest) -> ExecutorResult:
        argv = self.argv_for(request)
        logger.debug("Running %s for %s", argv, request.id)
        process = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(self.cwd) if self.cwd is not None else None,
            env=self.env,
        )
        stdout, stderr = await process.communicate(render_prompt(request).encode("utf-8"))
        output = stdout.decode("utf-8", errors="replace").strip()[-self.max_output_chars :]
        if process.returncode == 0:
            return ExecutorResult(item_id=request.id, success=True, output=output)

        detail = stderr.decode("utf-8", errors="replace").strip()[-self.max_output_chars :]
        return ExecutorResult(
            item_id=request.id,
            success=False,
            output=output,
            error=detail or f"command exited with status {process.returncode}",
        )
