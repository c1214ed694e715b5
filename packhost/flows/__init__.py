"""
Session-keyed flow execution with pause/resume.
"""

from .engine import (
    Completed,
    DeclarativeFlowEngine,
    ExecutionEngine,
    Faulted,
    StepResult,
    Suspended,
)
from .locks import KeyedLock
from .snapshot import FlowSnapshot, SnapshotStore
from .state_machine import FlowOutcome, FlowStateMachine, FlowStatus, SessionState

__all__ = [
    "Completed",
    "DeclarativeFlowEngine",
    "ExecutionEngine",
    "Faulted",
    "StepResult",
    "Suspended",
    "KeyedLock",
    "FlowSnapshot",
    "SnapshotStore",
    "FlowOutcome",
    "FlowStateMachine",
    "FlowStatus",
    "SessionState",
]
