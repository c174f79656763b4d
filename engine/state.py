"""
Foresight — Workflow State

One WorkflowState per running workflow instance. It is owned by that
instance's single-threaded decision loop and is never mutated
concurrently; shared learning state lives in graphrag/ and speculation/.

The context map is typed: every value is a ContextValue tagged with its
kind, so a checkpoint round-trip reproduces it exactly.
"""

from __future__ import annotations

import enum
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Iterator


# ─── Context Map ────────────────────────────────────────────────────

class ValueKind(str, enum.Enum):
    NULL = "null"
    BOOL = "bool"
    INT = "int"
    FLOAT = "float"
    STR = "str"
    LIST = "list"
    MAP = "map"


@dataclass(frozen=True)
class ContextValue:
    """Tagged variant. LIST holds a tuple of ContextValue, MAP a tuple of (key, ContextValue)."""
    kind: ValueKind
    value: Any = None

    @staticmethod
    def of(raw: Any) -> ContextValue:
        """Wrap a plain Python value. Raises TypeError on unsupported types."""
        if isinstance(raw, ContextValue):
            return raw
        if raw is None:
            return ContextValue(ValueKind.NULL)
        # bool before int: bool is an int subclass
        if isinstance(raw, bool):
            return ContextValue(ValueKind.BOOL, raw)
        if isinstance(raw, int):
            return ContextValue(ValueKind.INT, raw)
        if isinstance(raw, float):
            return ContextValue(ValueKind.FLOAT, raw)
        if isinstance(raw, str):
            return ContextValue(ValueKind.STR, raw)
        if isinstance(raw, (list, tuple)):
            return ContextValue(ValueKind.LIST, tuple(ContextValue.of(v) for v in raw))
        if isinstance(raw, dict):
            items = []
            for k, v in raw.items():
                if not isinstance(k, str):
                    raise TypeError(f"context map keys must be str, got {type(k).__name__}")
                items.append((k, ContextValue.of(v)))
            return ContextValue(ValueKind.MAP, tuple(items))
        raise TypeError(f"unsupported context value type: {type(raw).__name__}")

    def unwrap(self) -> Any:
        """Back to plain Python values."""
        if self.kind == ValueKind.LIST:
            return [v.unwrap() for v in self.value]
        if self.kind == ValueKind.MAP:
            return {k: v.unwrap() for k, v in self.value}
        return self.value

    def to_dict(self) -> dict[str, Any]:
        if self.kind == ValueKind.LIST:
            payload = [v.to_dict() for v in self.value]
        elif self.kind == ValueKind.MAP:
            payload = {k: v.to_dict() for k, v in self.value}
        else:
            payload = self.value
        return {"kind": self.kind.value, "value": payload}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ContextValue:
        kind = ValueKind(data["kind"])
        raw = data.get("value")
        if kind == ValueKind.LIST:
            return ContextValue(kind, tuple(ContextValue.from_dict(v) for v in raw))
        if kind == ValueKind.MAP:
            return ContextValue(kind, tuple((k, ContextValue.from_dict(v)) for k, v in raw.items()))
        if kind == ValueKind.FLOAT and raw is not None:
            raw = float(raw)
        return ContextValue(kind, raw)


class ContextMap:
    """Typed key-value store for workflow context."""

    def __init__(self, values: dict[str, Any] | None = None):
        self._values: dict[str, ContextValue] = {}
        for k, v in (values or {}).items():
            self.set(k, v)

    def set(self, key: str, value: Any) -> None:
        self._values[key] = ContextValue.of(value)

    def get(self, key: str, default: Any = None) -> Any:
        cv = self._values.get(key)
        return cv.unwrap() if cv is not None else default

    def _typed(self, key: str, kind: ValueKind, default: Any) -> Any:
        cv = self._values.get(key)
        if cv is None:
            return default
        if cv.kind != kind:
            raise TypeError(f"context[{key!r}] is {cv.kind.value}, not {kind.value}")
        return cv.unwrap()

    def get_str(self, key: str, default: str | None = None) -> str | None:
        return self._typed(key, ValueKind.STR, default)

    def get_int(self, key: str, default: int | None = None) -> int | None:
        return self._typed(key, ValueKind.INT, default)

    def get_float(self, key: str, default: float | None = None) -> float | None:
        return self._typed(key, ValueKind.FLOAT, default)

    def get_bool(self, key: str, default: bool | None = None) -> bool | None:
        return self._typed(key, ValueKind.BOOL, default)

    def remove(self, key: str) -> None:
        self._values.pop(key, None)

    def __contains__(self, key: str) -> bool:
        return key in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def __len__(self) -> int:
        return len(self._values)

    def __eq__(self, other: object) -> bool:
        return isinstance(other, ContextMap) and self._values == other._values

    def to_dict(self) -> dict[str, Any]:
        return {k: v.to_dict() for k, v in self._values.items()}

    @staticmethod
    def from_dict(data: dict[str, Any]) -> ContextMap:
        cm = ContextMap()
        for k, v in data.items():
            cm._values[k] = ContextValue.from_dict(v)
        return cm


# ─── Tasks, Decisions, Goals ────────────────────────────────────────

class TaskStatus(str, enum.Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass
class TaskRecord:
    task_id: str
    status: TaskStatus = TaskStatus.PENDING
    args: dict[str, Any] = field(default_factory=dict)
    output: dict[str, Any] | None = None
    error: str | None = None
    latency_ms: float = 0.0
    speculative: bool = False   # result came from a committed speculation

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "status": self.status.value,
            "args": self.args,
            "output": self.output,
            "error": self.error,
            "latency_ms": self.latency_ms,
            "speculative": self.speculative,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> TaskRecord:
        return TaskRecord(
            task_id=d["task_id"],
            status=TaskStatus(d.get("status", "pending")),
            args=d.get("args") or {},
            output=d.get("output"),
            error=d.get("error"),
            latency_ms=d.get("latency_ms", 0.0),
            speculative=d.get("speculative", False),
        )


@dataclass
class Decision:
    """One entry of the decision log: what ran, and what was predicted."""
    step: int
    chosen: str
    candidates: list[str] = field(default_factory=list)
    confidence: float = 0.0
    reason: str = ""
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> dict[str, Any]:
        return {
            "step": self.step,
            "chosen": self.chosen,
            "candidates": list(self.candidates),
            "confidence": self.confidence,
            "reason": self.reason,
            "timestamp": self.timestamp,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Decision:
        return Decision(
            step=d["step"],
            chosen=d["chosen"],
            candidates=list(d.get("candidates", [])),
            confidence=d.get("confidence", 0.0),
            reason=d.get("reason", ""),
            timestamp=d.get("timestamp", 0.0),
        )


class GoalStatus(str, enum.Enum):
    OPEN = "open"
    MET = "met"
    FAILED = "failed"


@dataclass
class Goal:
    goal_id: str
    description: str = ""
    status: GoalStatus = GoalStatus.OPEN

    def to_dict(self) -> dict[str, Any]:
        return {"goal_id": self.goal_id, "description": self.description,
                "status": self.status.value}

    @staticmethod
    def from_dict(d: dict[str, Any]) -> Goal:
        return Goal(d["goal_id"], d.get("description", ""),
                    GoalStatus(d.get("status", "open")))


# ─── Workflow State ─────────────────────────────────────────────────

class WorkflowStatus(str, enum.Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class WorkflowState:
    workflow_id: str
    workflow_type: str = ""
    domain: str = ""
    tasks: list[TaskRecord] = field(default_factory=list)
    decisions: list[Decision] = field(default_factory=list)
    context: ContextMap = field(default_factory=ContextMap)
    goals: list[Goal] = field(default_factory=list)
    status: WorkflowStatus = WorkflowStatus.RUNNING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)

    @staticmethod
    def create(workflow_type: str = "", domain: str = "",
               workflow_id: str | None = None) -> WorkflowState:
        return WorkflowState(
            workflow_id=workflow_id or f"wf_{uuid.uuid4().hex[:12]}",
            workflow_type=workflow_type,
            domain=domain,
        )

    # ── Queries ──

    def completed_tasks(self) -> list[TaskRecord]:
        return [t for t in self.tasks
                if t.status in (TaskStatus.SUCCESS, TaskStatus.FAILED)]

    def successful_tasks(self) -> list[TaskRecord]:
        return [t for t in self.tasks if t.status == TaskStatus.SUCCESS]

    def last_successful_task(self) -> TaskRecord | None:
        done = self.successful_tasks()
        return done[-1] if done else None

    def last_completed_task(self) -> TaskRecord | None:
        done = self.completed_tasks()
        return done[-1] if done else None

    def executed_task_ids(self) -> set[str]:
        return {t.task_id for t in self.tasks}

    def tool_sequence(self) -> list[str]:
        return [t.task_id for t in self.completed_tasks()]

    def context_hash(self) -> str:
        """Episode retrieval key: workflow type | domain | complexity bucket."""
        n = len(self.tasks)
        complexity = "high" if n > 10 else "medium" if n > 5 else "low"
        return (f"workflowType:{self.workflow_type or 'unknown'}"
                f"|domain:{self.domain or 'general'}"
                f"|complexity:{complexity}")

    # ── Mutation (owning workflow loop only) ──

    def append_task(self, record: TaskRecord) -> None:
        self.tasks.append(record)
        self.updated_at = time.time()

    def log_decision(self, decision: Decision) -> None:
        self.decisions.append(decision)
        self.updated_at = time.time()

    # ── Serialization ──

    def to_dict(self) -> dict[str, Any]:
        return {
            "workflow_id": self.workflow_id,
            "workflow_type": self.workflow_type,
            "domain": self.domain,
            "tasks": [t.to_dict() for t in self.tasks],
            "decisions": [d.to_dict() for d in self.decisions],
            "context": self.context.to_dict(),
            "goals": [g.to_dict() for g in self.goals],
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @staticmethod
    def from_dict(d: dict[str, Any]) -> WorkflowState:
        return WorkflowState(
            workflow_id=d["workflow_id"],
            workflow_type=d.get("workflow_type", ""),
            domain=d.get("domain", ""),
            tasks=[TaskRecord.from_dict(t) for t in d.get("tasks", [])],
            decisions=[Decision.from_dict(x) for x in d.get("decisions", [])],
            context=ContextMap.from_dict(d.get("context", {})),
            goals=[Goal.from_dict(g) for g in d.get("goals", [])],
            status=WorkflowStatus(d.get("status", "running")),
            created_at=d.get("created_at", 0.0),
            updated_at=d.get("updated_at", 0.0),
        )
