"""Task graph construction and concurrent execution.

A Graph collects immutable Tasks with explicit dependency edges. Compiling a
graph validates it (unknown dependencies, cycles) and yields a Flow, which
runs every task whose dependencies have all succeeded or been skipped,
concurrently, as asyncio tasks.

EXECUTION RULES:
- Task states: PENDING -> (SKIPPED | RUNNING) -> (SUCCEEDED | FAILED)
- SKIPPED is terminal and counts as success for dependents
- The persist callback runs after every finished task, serialized by a lock
- On the first failure nothing new is scheduled; running tasks finish, state
  is persisted once more and FlowError carries the root causes unmodified
- Cancelling the run cancels running tasks and propagates
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from enum import Enum

from .errors import InfraflowError, TaskTimeoutError

logger = logging.getLogger(__name__)

TaskFn = Callable[[], Awaitable[None]]
PersistFn = Callable[[], Awaitable[None]]


class TaskState(str, Enum):
    """Lifecycle state of a task within one run."""

    PENDING = "pending"
    SKIPPED = "skipped"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


DONE_STATES = frozenset({TaskState.SKIPPED, TaskState.SUCCEEDED})


class GraphError(InfraflowError):
    """Raised when a graph cannot be built or compiled."""

    pass


class DuplicateTaskError(GraphError):
    """Raised when a task name is added twice to the same graph."""

    pass


class UnknownDependencyError(GraphError):
    """Raised when a task depends on a task that is not in the graph."""

    pass


class CyclicDependencyError(GraphError):
    """Raised when the task dependencies form a cycle."""

    pass


class FlowError(InfraflowError):
    """One or more tasks of a flow failed.

    Attributes:
        flow: Name of the failed flow
        causes: Exceptions raised by the failed tasks, unmodified
        result: Final task states of the run
    """

    def __init__(
        self,
        flow: str,
        causes: list[BaseException],
        result: FlowResult | None = None,
    ) -> None:
        summary = "; ".join(str(c) for c in causes)
        super().__init__(f"flow {flow!r} failed: {summary}")
        self.flow = flow
        self.causes = list(causes)
        self.result = result


@dataclass(frozen=True)
class Task:
    """Immutable unit of work.

    Attributes:
        name: Unique within its graph, also the task's id
        fn: Coroutine function doing the work; raises on failure
        dependencies: Names of tasks that must succeed or be skipped first
        skip: Evaluated at build time; a skipped task never runs
        timeout: Seconds before the task fails with TaskTimeoutError
    """

    name: str
    fn: TaskFn
    dependencies: frozenset[str] = frozenset()
    skip: bool = False
    timeout: float | None = None


@dataclass
class FlowResult:
    """Final per-task states of a run."""

    flow: str
    states: dict[str, TaskState] = field(default_factory=dict)
    duration_seconds: float = 0.0

    @property
    def succeeded(self) -> bool:
        return all(state in DONE_STATES for state in self.states.values())

    def tasks_in(self, state: TaskState) -> list[str]:
        return sorted(name for name, s in self.states.items() if s == state)


class Graph:
    """Named collection of tasks with dependency edges."""

    def __init__(self, name: str) -> None:
        self.name = name
        self._tasks: dict[str, Task] = {}

    def add(self, task: Task) -> str:
        """Add a task and return its id.

        Raises:
            DuplicateTaskError: If a task with the same name exists.
        """
        if task.name in self._tasks:
            raise DuplicateTaskError(f"task {task.name!r} already exists in graph {self.name!r}")
        self._tasks[task.name] = task
        return task.name

    @property
    def tasks(self) -> Mapping[str, Task]:
        return dict(self._tasks)

    def __len__(self) -> int:
        return len(self._tasks)

    def compile(self) -> Flow:
        """Validate the graph and return an executable flow.

        Raises:
            UnknownDependencyError: If a dependency names no task in the graph.
            CyclicDependencyError: If the dependencies contain a cycle.
        """
        for task in self._tasks.values():
            unknown = sorted(d for d in task.dependencies if d not in self._tasks)
            if unknown:
                raise UnknownDependencyError(
                    f"task {task.name!r} depends on unknown task(s): {unknown}"
                )

        # Kahn's algorithm, edges point from a dependency to its dependents
        dependents: dict[str, list[str]] = {name: [] for name in self._tasks}
        in_degree: dict[str, int] = {name: 0 for name in self._tasks}
        for task in self._tasks.values():
            for dep in task.dependencies:
                dependents[dep].append(task.name)
                in_degree[task.name] += 1

        order: list[str] = []
        queue = [name for name, degree in in_degree.items() if degree == 0]
        while queue:
            # Sorted for deterministic ordering among independent tasks
            queue.sort()
            current = queue.pop(0)
            order.append(current)
            for dependent in dependents[current]:
                in_degree[dependent] -= 1
                if in_degree[dependent] == 0:
                    queue.append(dependent)

        if len(order) != len(self._tasks):
            cycle_nodes = sorted(name for name, degree in in_degree.items() if degree > 0)
            raise CyclicDependencyError(
                f"circular dependency in graph {self.name!r} involving: {cycle_nodes}"
            )

        return Flow(self.name, dict(self._tasks), order)


class Flow:
    """Compiled, immutable execution plan of a graph."""

    def __init__(self, name: str, tasks: dict[str, Task], order: list[str]) -> None:
        self.name = name
        self._tasks = tasks
        self._order = order

    @property
    def order(self) -> list[str]:
        """Task names in a valid topological order."""
        return list(self._order)

    async def run(self, persist: PersistFn | None = None) -> FlowResult:
        """Execute all tasks honoring dependencies.

        Args:
            persist: Awaited after every finished task and once more after a failure.

        Returns:
            FlowResult with the final task states.

        Raises:
            FlowError: If any task failed.
            asyncio.CancelledError: If the run was cancelled.
        """
        start = time.monotonic()
        states: dict[str, TaskState] = {name: TaskState.PENDING for name in self._order}
        running: dict[asyncio.Task[None], str] = {}
        causes: list[BaseException] = []
        persist_lock = asyncio.Lock()

        logger.info("Starting flow", extra={"flow": self.name, "tasks": len(self._order)})

        def schedule_ready() -> None:
            progressed = True
            while progressed:
                progressed = False
                for name in self._order:
                    if states[name] != TaskState.PENDING:
                        continue
                    task = self._tasks[name]
                    if not all(states[d] in DONE_STATES for d in task.dependencies):
                        continue
                    if task.skip:
                        states[name] = TaskState.SKIPPED
                        logger.info("Skipping task", extra={"flow": self.name, "task": name})
                        progressed = True
                        continue
                    states[name] = TaskState.RUNNING
                    running[asyncio.create_task(self._run_task(task), name=name)] = name

        try:
            schedule_ready()
            while running:
                done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
                for finished in done:
                    name = running.pop(finished)
                    error = self._task_error(finished)
                    if error is None:
                        states[name] = TaskState.SUCCEEDED
                    else:
                        states[name] = TaskState.FAILED
                        causes.append(error)
                        logger.error(
                            "Task failed",
                            extra={"flow": self.name, "task": name, "error": str(error)},
                        )
                    await self._persist(persist, persist_lock)
                if not causes:
                    schedule_ready()
        except asyncio.CancelledError:
            logger.warning(
                "Flow cancelled",
                extra={"flow": self.name, "running": sorted(running.values())},
            )
            for pending in running:
                pending.cancel()
            await asyncio.gather(*running, return_exceptions=True)
            raise

        result = FlowResult(
            flow=self.name,
            states=states,
            duration_seconds=round(time.monotonic() - start, 3),
        )

        if causes:
            await self._persist(persist, persist_lock)
            raise FlowError(self.name, causes, result)

        logger.info(
            "Flow finished",
            extra={
                "flow": self.name,
                "duration_seconds": result.duration_seconds,
                "skipped": result.tasks_in(TaskState.SKIPPED),
            },
        )
        return result

    @staticmethod
    def _task_error(task: asyncio.Task[None]) -> BaseException | None:
        if task.cancelled():
            return asyncio.CancelledError(f"task {task.get_name()} was cancelled")
        return task.exception()

    async def _run_task(self, task: Task) -> None:
        if task.timeout is None:
            await task.fn()
            return
        try:
            async with asyncio.timeout(task.timeout) as cm:
                await task.fn()
        except TimeoutError as e:
            if cm.expired():
                raise TaskTimeoutError(task.name, task.timeout) from e
            raise

    async def _persist(self, persist: PersistFn | None, lock: asyncio.Lock) -> None:
        if persist is None:
            return
        async with lock:
            try:
                await persist()
            except Exception as e:
                logger.error(
                    "Failed to persist flow state",
                    extra={"flow": self.name, "error": str(e)},
                )
