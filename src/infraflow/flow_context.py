"""Task registration helpers shared by the reconcile and delete graphs.

BasicFlowContext wraps each task function with a per-task logger and
optional start/duration logging, and turns task options (dependencies,
timeout, conditions) into an immutable Task.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from collections.abc import AsyncIterator, MutableMapping
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any

from .flow import Graph, Task, TaskFn

logger = logging.getLogger(__name__)


class TaskLoggerAdapter(logging.LoggerAdapter):
    """LoggerAdapter merging its fields with per-call ``extra``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        merged = dict(self.extra or {})
        merged.update(kwargs.get("extra") or {})
        kwargs["extra"] = merged
        return msg, kwargs


_task_logger: ContextVar[TaskLoggerAdapter | None] = ContextVar("infraflow_task_logger", default=None)


def log_from_context() -> TaskLoggerAdapter:
    """Logger of the currently running task, or a plain module logger."""
    adapter = _task_logger.get()
    if adapter is None:
        return TaskLoggerAdapter(logger, {})
    return adapter


@dataclass(frozen=True)
class TaskOption:
    dependencies: tuple[str, ...] = ()
    timeout: float | None = None
    condition: bool | None = None


def dependencies(*task_ids: str) -> TaskOption:
    return TaskOption(dependencies=tuple(t for t in task_ids if t))


def timeout(seconds: float) -> TaskOption:
    return TaskOption(timeout=seconds)


def do_if(condition: bool) -> TaskOption:
    """Run the task only if condition holds. Several conditions are AND-ed."""
    return TaskOption(condition=bool(condition))


class BasicFlowContext:
    """Builds tasks with logging and span wrappers."""

    def __init__(self) -> None:
        self._logger: logging.Logger = logger
        self._span = False

    def with_logger(self, log: logging.Logger) -> BasicFlowContext:
        self._logger = log
        return self

    def with_span(self, enabled: bool = True) -> BasicFlowContext:
        self._span = enabled
        return self

    def add_task(self, graph: Graph, name: str, fn: TaskFn, *options: TaskOption) -> str:
        """Wrap fn and add it to graph as task name.

        Returns:
            The task id, for use in other tasks' dependencies.
        """
        deps: list[str] = []
        task_timeout: float | None = None
        run = True
        for option in options:
            deps.extend(option.dependencies)
            if option.timeout is not None:
                task_timeout = option.timeout
            if option.condition is not None:
                run = run and option.condition

        return graph.add(
            Task(
                name=name,
                fn=self._wrap(graph.name, name, fn),
                dependencies=frozenset(deps),
                skip=not run,
                timeout=task_timeout,
            )
        )

    def _wrap(self, flow: str, name: str, fn: TaskFn) -> TaskFn:
        base = self._logger
        span = self._span

        async def wrapped() -> None:
            adapter = TaskLoggerAdapter(base, {"flow": flow, "task": name})
            token = _task_logger.set(adapter)
            start = time.monotonic()
            if span:
                adapter.info("Task started")
            try:
                await fn()
            finally:
                if span:
                    adapter.info(
                        "Task finished",
                        extra={"duration_seconds": round(time.monotonic() - start, 3)},
                    )
                _task_logger.reset(token)

        return wrapped


@contextlib.asynccontextmanager
async def inform_on_waiting(
    message: str,
    period: float,
    log: logging.LoggerAdapter | logging.Logger | None = None,
    **fields: Any,
) -> AsyncIterator[None]:
    """Log message with fields and the elapsed seconds every period until the block exits."""
    log = log or log_from_context()
    start = time.monotonic()

    async def inform() -> None:
        while True:
            await asyncio.sleep(period)
            log.info(message, extra={**fields, "elapsed_seconds": int(time.monotonic() - start)})

    informer = asyncio.create_task(inform())
    try:
        yield
    finally:
        informer.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await informer
