"""
Flow State Machine.

Advances one conversation by one event against the tenant's live
runtime.

Session states:
    ABSENT     no snapshot; the next event starts a flow
    SUSPENDED  a snapshot exists; the next event resumes it

Transitions for one event (all under the session's lock):
    ABSENT    + event -> select flow, run from the start
    SUSPENDED + event -> load snapshot, run from its node pointer
    run -> Suspended  -> write snapshot           -> SUSPENDED
    run -> Completed  -> delete snapshot          -> ABSENT
    run -> Faulted    -> delete snapshot          -> ABSENT
    snapshot's flow missing from the live runtime -> delete, RESUME_FAILED

A snapshot exists exactly while the session is suspended. Resume reads
whatever runtime is live NOW, which may be newer than the one that
suspended the flow; flows are matched by id.

Flow selection for a fresh session:
    1. envelope.metadata["flow_id"]
    2. the runtime's routing table
    3. the runtime's default flow
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

from packhost.errors import ExecutionFault, FlowNotFoundError, ResumeError, TenantNotFoundError
from packhost.flows.engine import Completed, DeclarativeFlowEngine, Faulted, Suspended
from packhost.flows.locks import KeyedLock
from packhost.flows.snapshot import FlowSnapshot
from packhost.observability import get_metrics

if TYPE_CHECKING:
    from packhost.flows.engine import ExecutionEngine, StepResult
    from packhost.flows.snapshot import SnapshotStore
    from packhost.ingress.envelope import CanonicalIngressEnvelope
    from packhost.runtime.compositor import TenantRuntime
    from packhost.runtime.registry import TenantRuntimeRegistry

logger = logging.getLogger(__name__)


class FlowStatus(str, Enum):
    COMPLETED = "completed"
    SUSPENDED = "suspended"
    FAULTED = "faulted"
    RESUME_FAILED = "resume_failed"


class SessionState(str, Enum):
    ABSENT = "absent"
    SUSPENDED = "suspended"


@dataclass(frozen=True)
class FlowOutcome:
    """What one event did to a conversation."""

    status: FlowStatus
    session_key: str
    tenant: str
    flow_id: str | None = None
    outcome: Any = None
    effects: list[dict[str, Any]] = field(default_factory=list)
    error: str | None = None
    reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.status in (FlowStatus.COMPLETED, FlowStatus.SUSPENDED)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "session_key": self.session_key,
            "tenant": self.tenant,
            "flow_id": self.flow_id,
            "outcome": self.outcome,
            "effects": self.effects,
            "error": self.error,
            "reason": self.reason,
        }


class FlowStateMachine:
    def __init__(
        self,
        registry: TenantRuntimeRegistry,
        snapshots: SnapshotStore,
        engine: ExecutionEngine | None = None,
        locks: KeyedLock | None = None,
    ):
        self.registry = registry
        self.snapshots = snapshots
        self.engine = engine or DeclarativeFlowEngine()
        self.locks = locks or KeyedLock()

    async def advance(self, envelope: CanonicalIngressEnvelope, session_key: str) -> FlowOutcome:
        """Run one event for ``session_key``; events on one key never interleave."""
        started = time.perf_counter()
        async with self.locks.hold(session_key):
            outcome = await self._advance(envelope, session_key)
        duration_ms = (time.perf_counter() - started) * 1000
        get_metrics().record_outcome(outcome.status.value, duration_ms)
        return outcome

    async def abandon(self, session_key: str) -> bool:
        """Explicitly drop a suspended conversation."""
        async with self.locks.hold(session_key):
            removed = await self.snapshots.delete(session_key)
        if removed:
            logger.info(f"[flow] Abandoned {session_key}")
        return removed

    async def state_of(self, session_key: str) -> SessionState:
        if await self.snapshots.exists(session_key):
            return SessionState.SUSPENDED
        return SessionState.ABSENT

    # -------------------------------------------------------------------------

    async def _advance(self, envelope: CanonicalIngressEnvelope, session_key: str) -> FlowOutcome:
        tenant = envelope.tenant
        runtime = self.registry.get(tenant)
        if runtime is None:
            # The snapshot is kept: the tenant may come back on the next reload.
            error = TenantNotFoundError(tenant)
            logger.warning(f"[flow] {session_key}: {error}")
            return FlowOutcome(
                status=FlowStatus.FAULTED,
                session_key=session_key,
                tenant=tenant,
                error=str(error),
            )

        snapshot = await self.snapshots.load(session_key)
        if snapshot is not None:
            flow_id = snapshot.flow_id
            flow = runtime.get_flow(flow_id)
            if flow is None:
                await self.snapshots.delete(session_key)
                error = ResumeError(
                    f"Flow '{flow_id}' is not in the live runtime for '{tenant}'",
                    flow_id=flow_id,
                    session_key=session_key,
                    tenant=tenant,
                )
                logger.error(f"[flow] Resume failed for {session_key}: {error}")
                return FlowOutcome(
                    status=FlowStatus.RESUME_FAILED,
                    session_key=session_key,
                    tenant=tenant,
                    flow_id=flow_id,
                    error=str(error),
                )
            if snapshot.runtime_fingerprint and snapshot.runtime_fingerprint != runtime.fingerprint:
                logger.info(
                    f"[flow] Resuming {session_key} on a newer runtime "
                    f"({snapshot.runtime_fingerprint[:12]} -> {runtime.fingerprint[:12]})"
                )
            pointer: str | None = snapshot.node_pointer
            state = dict(snapshot.execution_state)
        else:
            try:
                flow_id = self._select_flow(runtime, envelope, session_key)
            except FlowNotFoundError as e:
                logger.warning(f"[flow] {session_key}: {e}")
                return FlowOutcome(
                    status=FlowStatus.FAULTED,
                    session_key=session_key,
                    tenant=tenant,
                    error=str(e),
                )
            flow = runtime.flows[flow_id]
            pointer = None
            state = {}

        result = await self._execute(flow, pointer, state, envelope)
        return await self._settle(result, runtime, envelope, session_key, flow_id, snapshot)

    def _select_flow(
        self,
        runtime: TenantRuntime,
        envelope: CanonicalIngressEnvelope,
        session_key: str,
    ) -> str:
        requested = envelope.metadata.get("flow_id")
        if requested:
            if runtime.has_flow(str(requested)):
                return str(requested)
            raise FlowNotFoundError(
                f"Requested flow '{requested}' does not exist",
                flow_id=str(requested),
                session_key=session_key,
                tenant=runtime.tenant_id,
            )

        selected = runtime.select_flow(envelope)
        if selected is None:
            raise FlowNotFoundError(
                "No route or default flow matches this event",
                session_key=session_key,
                tenant=runtime.tenant_id,
            )
        return selected

    async def _execute(
        self,
        flow: Any,
        pointer: str | None,
        state: dict[str, Any],
        envelope: CanonicalIngressEnvelope,
    ) -> StepResult:
        try:
            result = await self.engine.execute(flow, pointer, state, envelope)
        except Exception as e:
            logger.exception(f"[flow] Engine raised while running '{flow.get('id')}'")
            return Faulted(error=f"{type(e).__name__}: {e}")

        if not isinstance(result, Suspended | Completed | Faulted):
            return Faulted(error=f"Engine returned {type(result).__name__}, not a step result")
        return result

    async def _settle(
        self,
        result: StepResult,
        runtime: TenantRuntime,
        envelope: CanonicalIngressEnvelope,
        session_key: str,
        flow_id: str,
        previous: FlowSnapshot | None,
    ) -> FlowOutcome:
        tenant = envelope.tenant

        if isinstance(result, Suspended):
            await self.snapshots.save(
                FlowSnapshot(
                    session_key=session_key,
                    tenant=tenant,
                    flow_id=flow_id,
                    node_pointer=result.node_pointer,
                    execution_state=result.execution_state,
                    runtime_fingerprint=runtime.fingerprint,
                    reason=result.reason,
                )
            )
            logger.info(f"[flow] {session_key} suspended in '{flow_id}' at {result.node_pointer}")
            return FlowOutcome(
                status=FlowStatus.SUSPENDED,
                session_key=session_key,
                tenant=tenant,
                flow_id=flow_id,
                effects=list(result.effects),
                reason=result.reason,
            )

        if previous is not None or isinstance(result, Faulted):
            await self.snapshots.delete(session_key)

        if isinstance(result, Completed):
            logger.info(f"[flow] {session_key} completed '{flow_id}'")
            return FlowOutcome(
                status=FlowStatus.COMPLETED,
                session_key=session_key,
                tenant=tenant,
                flow_id=flow_id,
                outcome=result.outcome,
                effects=list(result.effects),
            )

        error = ExecutionFault(
            result.error, flow_id=flow_id, session_key=session_key, tenant=tenant
        )
        logger.error(f"[flow] {session_key} faulted in '{flow_id}': {error}")
        return FlowOutcome(
            status=FlowStatus.FAULTED,
            session_key=session_key,
            tenant=tenant,
            flow_id=flow_id,
            effects=list(result.effects),
            error=str(error),
        )
