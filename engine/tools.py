"""
Foresight — Tool Execution Seam

The engine never runs tools itself. Every task, speculative or real,
goes through a TaskExecutor supplied by the sandbox collaborator, which
enforces its own isolation, permissions and timeouts.

ToolRegistry is the in-process TaskExecutor used for dev/test: task ids
map to plain callables.

Usage:
    registry = ToolRegistry()
    registry.register("fs:read_file", read_fn, read_only=True)
    result = registry.execute_task("fs:read_file", {"path": "a.txt"})
"""

import time
from typing import Any, Callable, Protocol
from dataclasses import dataclass


# ---------------------------------------------------------------------------
# Executor protocol
# ---------------------------------------------------------------------------

@dataclass
class TaskResult:
    """Result of executing a single task."""
    task_id: str
    status: str  # success | failed
    output: dict[str, Any] | None = None
    error: str | None = None
    latency_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "success"


class TaskExecutor(Protocol):
    """The sandbox collaborator's executeTask."""
    def execute_task(self, task_id: str, args: dict[str, Any]) -> TaskResult:
        """
        Args:
            task_id: Capability / tool identifier.
            args:    Task arguments.
        Returns:
            TaskResult. Implementations may also raise; callers treat
            an exception as a failed result.
        """
        ...


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

@dataclass
class ToolSpec:
    """Registration entry for a tool."""
    name: str
    fn: Callable[[dict[str, Any]], dict[str, Any]]
    description: str = ""
    read_only: bool = False


class ToolRegistry:
    """In-process TaskExecutor backed by registered callables."""

    def __init__(self):
        self._tools: dict[str, ToolSpec] = {}

    def register(
        self,
        name: str,
        fn: Callable[[dict[str, Any]], dict[str, Any]],
        description: str = "",
        read_only: bool = False,
    ):
        self._tools[name] = ToolSpec(
            name=name,
            fn=fn,
            description=description,
            read_only=read_only,
        )

    def get(self, name: str) -> ToolSpec | None:
        return self._tools.get(name)

    def list_tools(self) -> list[str]:
        return list(self._tools.keys())

    def read_only_tools(self) -> list[str]:
        """Candidates for the speculation allow-list."""
        return [n for n, s in self._tools.items() if s.read_only]

    def execute_task(self, task_id: str, args: dict[str, Any]) -> TaskResult:
        spec = self._tools.get(task_id)
        if spec is None:
            return TaskResult(
                task_id=task_id,
                status="failed",
                error=f"Tool '{task_id}' not registered",
            )

        t0 = time.time()
        try:
            output = spec.fn(args)
            return TaskResult(
                task_id=task_id,
                status="success",
                output=output,
                latency_ms=(time.time() - t0) * 1000,
            )
        except Exception as e:
            return TaskResult(
                task_id=task_id,
                status="failed",
                error=str(e),
                latency_ms=(time.time() - t0) * 1000,
            )


def run_task(executor: TaskExecutor, task_id: str, args: dict[str, Any]) -> TaskResult:
    """Call an executor, converting a raised exception into a failed result."""
    t0 = time.time()
    try:
        result = executor.execute_task(task_id, args)
    except Exception as e:
        return TaskResult(
            task_id=task_id,
            status="failed",
            error=f"{type(e).__name__}: {e}",
            latency_ms=(time.time() - t0) * 1000,
        )
    if result.latency_ms <= 0:
        result.latency_ms = (time.time() - t0) * 1000
    return result
