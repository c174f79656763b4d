"""
Foresight — Engine Package

Ambient machinery shared by graphrag/ and speculation/: configuration,
structured logging, workflow state, the tool execution seam, outcome
delivery, and SQLite persistence. Nothing here depends on numpy or
networkx.
"""

from engine.state import (
    WorkflowState, WorkflowStatus, TaskRecord, TaskStatus,
    Decision, Goal, GoalStatus, ContextMap, ContextValue, ValueKind,
)
from engine.tools import TaskExecutor, TaskResult, ToolRegistry, run_task
from engine.config import EngineConfig, ConfigError, load_engine_config
