"""
Execution engine boundary.

The state machine decides WHICH flow, pointer and state to run; the
engine decides what running them means. One call executes until the
flow suspends, completes or faults:

    execute(flow, node_pointer | None, execution_state, envelope) -> StepResult

StepResult is a tagged value, not a coroutine that stays alive between
events, so a suspended flow can be persisted and resumed by any process.

DeclarativeFlowEngine is the reference engine used for development and
tests. Flow definitions carry a ``steps`` list:

    {"reply": "Checking..."}                  emit a reply effect
    {"set": {"amount": "$text"}}              write execution state
    {"await_input": {"reason": "approval"}}   suspend until the next event
    {"complete": "approved"}                  finish with an outcome
    {"fail": "quota exceeded"}                finish with a fault

``$text`` is the current event text and ``$state.<key>`` reads execution
state. Node pointers are ``step-<index>`` of the awaiting step; resuming
stores the new event text as ``state["input"]`` (and under the step's
``store`` key, if any) and continues after it. Running off the end of
the steps completes with ``{"status": "done"}``.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from packhost.ingress.envelope import CanonicalIngressEnvelope


# =============================================================================
# Step results
# =============================================================================


@dataclass(frozen=True)
class Suspended:
    node_pointer: str
    execution_state: dict[str, Any]
    reason: str | None = None
    effects: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Completed:
    outcome: Any
    effects: list[dict[str, Any]] = field(default_factory=list)


@dataclass(frozen=True)
class Faulted:
    error: str
    effects: list[dict[str, Any]] = field(default_factory=list)


StepResult = Suspended | Completed | Faulted


@runtime_checkable
class ExecutionEngine(Protocol):
    async def execute(
        self,
        flow: Mapping[str, Any],
        node_pointer: str | None,
        execution_state: dict[str, Any],
        envelope: CanonicalIngressEnvelope,
    ) -> StepResult:
        ...


# =============================================================================
# Reference engine
# =============================================================================


POINTER_PREFIX = "step-"

# Field holding the payload in the ``{"type": ...}`` step form.
TYPED_FIELDS = {
    "reply": "text",
    "set": "values",
    "await_input": None,
    "complete": "outcome",
    "fail": "error",
}


def _pointer(index: int) -> str:
    return f"{POINTER_PREFIX}{index}"


def _parse_pointer(pointer: str) -> int | None:
    if not pointer.startswith(POINTER_PREFIX):
        return None
    try:
        return int(pointer[len(POINTER_PREFIX):])
    except ValueError:
        return None


def _normalize(step: Any) -> tuple[str, Any] | None:
    """
    Accept ``{"reply": "hi"}`` or ``{"type": "reply", "text": "hi"}``.

    Returns (kind, payload); await_input payloads are always mappings.
    """
    if not isinstance(step, Mapping):
        return None
    if "type" in step:
        kind = str(step["type"])
        if kind not in TYPED_FIELDS:
            return None
        name = TYPED_FIELDS[kind]
        payload = step if name is None else step.get(name)
    elif len(step) == 1:
        kind, payload = next(iter(step.items()))
        if kind not in TYPED_FIELDS:
            return None
    else:
        return None

    if kind == "await_input" and not isinstance(payload, Mapping):
        payload = {"reason": payload}
    return kind, payload


class DeclarativeFlowEngine:
    """Interprets declarative ``steps`` lists."""

    async def execute(
        self,
        flow: Mapping[str, Any],
        node_pointer: str | None,
        execution_state: dict[str, Any],
        envelope: CanonicalIngressEnvelope,
    ) -> StepResult:
        flow_id = flow.get("id")
        steps = list(flow.get("steps") or ())
        state = dict(execution_state)
        effects: list[dict[str, Any]] = []

        if node_pointer is None:
            index = 0
        else:
            waiting_at = _parse_pointer(node_pointer)
            step = None
            if waiting_at is not None and 0 <= waiting_at < len(steps):
                step = _normalize(steps[waiting_at])
            if step is None or step[0] != "await_input":
                return Faulted(f"Flow '{flow_id}' cannot resume at {node_pointer}")
            state["input"] = envelope.text
            if step[1].get("store"):
                state[str(step[1]["store"])] = envelope.text
            index = waiting_at + 1

        while index < len(steps):
            step = _normalize(steps[index])
            if step is None:
                return Faulted(f"Flow '{flow_id}' has an unknown step at {_pointer(index)}", effects)
            kind, payload = step

            if kind == "reply":
                effects.append({"type": "reply", "text": self._resolve(payload, envelope, state)})
            elif kind == "set":
                if not isinstance(payload, Mapping):
                    return Faulted(f"'set' at {_pointer(index)} needs a mapping", effects)
                for key, value in payload.items():
                    state[str(key)] = self._resolve(value, envelope, state)
            elif kind == "await_input":
                reason = payload.get("reason")
                return Suspended(
                    node_pointer=_pointer(index),
                    execution_state=state,
                    reason=str(reason) if reason is not None else None,
                    effects=effects,
                )
            elif kind == "complete":
                return Completed(outcome=self._resolve(payload, envelope, state), effects=effects)
            else:
                return Faulted(str(self._resolve(payload, envelope, state)), effects)

            index += 1

        return Completed(outcome={"status": "done"}, effects=effects)

    def _resolve(self, value: Any, envelope: CanonicalIngressEnvelope, state: dict[str, Any]) -> Any:
        if isinstance(value, str):
            if value == "$text":
                return envelope.text
            if value.startswith("$state."):
                return state.get(value[len("$state."):])
            return value
        if isinstance(value, Mapping):
            return {k: self._resolve(v, envelope, state) for k, v in value.items()}
        if isinstance(value, list | tuple):
            return [self._resolve(v, envelope, state) for v in value]
        return value
