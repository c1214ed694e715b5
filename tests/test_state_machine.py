"""
Tests for the flow state machine: selection, suspend/resume and faults.
"""
import asyncio

import pytest

from packhost.flows.engine import Completed, Suspended
from packhost.flows.snapshot import SnapshotStore
from packhost.flows.state_machine import FlowStateMachine, FlowStatus, SessionState
from packhost.ingress.session_key import derive
from packhost.observability import get_metrics
from packhost.runtime.compositor import PackCompositor
from packhost.runtime.registry import TenantRuntimeRegistry
from packhost.storage.kv import InMemoryKeyValueStore

KEY = "demo:telegram:42:1"


@pytest.fixture
def registry(make_artifact, make_manifest, flows):
    registry = TenantRuntimeRegistry()
    main = make_manifest(
        "demo",
        flows,
        routes=[{"flow": "approve", "command": "/approve"}],
        default_flow="greet",
    )
    registry.swap("demo", PackCompositor().compose("demo", make_artifact(main)))
    return registry


@pytest.fixture
def snapshots():
    return SnapshotStore(InMemoryKeyValueStore())


@pytest.fixture
def machine(registry, snapshots):
    return FlowStateMachine(registry, snapshots)


class RecordingEngine:
    """Suspends on the first call, records what it is resumed with."""

    def __init__(self, pointer: str, state: dict):
        self.pointer = pointer
        self.state = state
        self.resumed_with = None

    async def execute(self, flow, node_pointer, execution_state, envelope):
        if node_pointer is None:
            return Suspended(node_pointer=self.pointer, execution_state=self.state)
        self.resumed_with = (node_pointer, execution_state)
        return Completed(outcome="resumed")


class TestScenarios:
    """End-to-end conversations against a live runtime."""

    @pytest.mark.asyncio
    async def test_greet_completes_without_snapshot(self, machine, snapshots, make_envelope):
        envelope = make_envelope("/start", flow_id="greet")
        assert derive(envelope) == KEY

        outcome = await machine.advance(envelope, KEY)

        assert outcome.status is FlowStatus.COMPLETED
        assert outcome.outcome == "hi"
        assert outcome.flow_id == "greet"
        assert not await snapshots.exists(KEY)
        assert await machine.state_of(KEY) is SessionState.ABSENT

    @pytest.mark.asyncio
    async def test_approve_suspends_then_resumes(self, machine, snapshots, make_envelope):
        first = await machine.advance(make_envelope("/approve"), KEY)

        assert first.status is FlowStatus.SUSPENDED
        assert first.reason == "approval"
        assert first.effects == [{"type": "reply", "text": "Approve the request?"}]
        assert await machine.state_of(KEY) is SessionState.SUSPENDED

        second = await machine.advance(make_envelope("yes"), KEY)

        assert second.status is FlowStatus.COMPLETED
        assert second.outcome == "approved"
        assert second.flow_id == "approve"
        assert not await snapshots.exists(KEY)

    @pytest.mark.asyncio
    async def test_default_flow_when_no_route_matches(self, machine, make_envelope):
        outcome = await machine.advance(make_envelope("anything"), KEY)
        assert outcome.flow_id == "greet"

    @pytest.mark.asyncio
    async def test_sessions_are_independent(self, machine, make_envelope):
        await machine.advance(make_envelope("/approve"), KEY)
        other = await machine.advance(make_envelope("/start", user_id="2"), "demo:telegram:42:2")

        assert other.status is FlowStatus.COMPLETED
        assert await machine.state_of(KEY) is SessionState.SUSPENDED


class TestSnapshotRoundTrip:
    """Resume sees exactly what suspend produced."""

    @pytest.mark.asyncio
    async def test_pointer_and_state_round_trip(self, registry, snapshots, make_envelope):
        state = {"amount": 12.5, "items": ["a", {"b": None}], "nested": {"ok": True}}
        engine = RecordingEngine("node-7", state)
        machine = FlowStateMachine(registry, snapshots, engine=engine)

        await machine.advance(make_envelope(flow_id="approve"), KEY)
        stored = await snapshots.load(KEY)
        assert stored.node_pointer == "node-7"
        assert stored.execution_state == state
        assert stored.runtime_fingerprint == registry.get("demo").fingerprint

        outcome = await machine.advance(make_envelope("next"), KEY)

        assert outcome.outcome == "resumed"
        assert engine.resumed_with == ("node-7", state)

    @pytest.mark.asyncio
    async def test_snapshot_exists_iff_suspended(self, machine, snapshots, make_envelope):
        for text, suspended in (("/approve", True), ("yes", False), ("/approve", True), ("no", False)):
            outcome = await machine.advance(make_envelope(text), KEY)
            assert (outcome.status is FlowStatus.SUSPENDED) is suspended
            assert await snapshots.exists(KEY) is suspended


class TestFailures:
    """Faults and resume failures."""

    @pytest.mark.asyncio
    async def test_resume_failed_when_flow_disappears(
        self, machine, registry, snapshots, make_envelope, make_artifact, make_manifest, flows
    ):
        await machine.advance(make_envelope("/approve"), KEY)
        registry.swap(
            "demo",
            PackCompositor().compose(
                "demo", make_artifact(make_manifest("demo", {"greet": flows["greet"]}, version="2.0.0"))
            ),
        )

        outcome = await machine.advance(make_envelope("yes"), KEY)

        assert outcome.status is FlowStatus.RESUME_FAILED
        assert "approve" in outcome.error
        assert not await snapshots.exists(KEY)
        assert get_metrics().resume_failures_total == 1

    @pytest.mark.asyncio
    async def test_resume_uses_newer_runtime(
        self, machine, registry, make_envelope, make_artifact, make_manifest, flows
    ):
        await machine.advance(make_envelope("/approve"), KEY)
        changed = {
            "greet": flows["greet"],
            "approve": {
                "steps": [
                    {"reply": "Approve?"},
                    {"await_input": {"reason": "approval"}},
                    {"complete": "approved-v2"},
                ]
            },
        }
        registry.swap(
            "demo",
            PackCompositor().compose("demo", make_artifact(make_manifest("demo", changed, version="2.0.0"))),
        )

        outcome = await machine.advance(make_envelope("yes"), KEY)
        assert outcome.outcome == "approved-v2"

    @pytest.mark.asyncio
    async def test_unknown_tenant_keeps_snapshot(self, machine, registry, snapshots, make_envelope):
        await machine.advance(make_envelope("/approve"), KEY)
        registry.remove("demo")

        outcome = await machine.advance(make_envelope("yes"), KEY)

        assert outcome.status is FlowStatus.FAULTED
        assert "No live runtime" in outcome.error
        assert await snapshots.exists(KEY)

    @pytest.mark.asyncio
    async def test_requested_flow_missing(self, machine, make_envelope):
        outcome = await machine.advance(make_envelope(flow_id="nope"), KEY)
        assert outcome.status is FlowStatus.FAULTED
        assert "nope" in outcome.error

    @pytest.mark.asyncio
    async def test_engine_exception_faults_and_clears(self, registry, snapshots, make_envelope):
        class Exploding:
            async def execute(self, flow, node_pointer, execution_state, envelope):
                raise RuntimeError("engine bug")

        machine = FlowStateMachine(registry, snapshots, engine=Exploding())
        outcome = await machine.advance(make_envelope(), KEY)

        assert outcome.status is FlowStatus.FAULTED
        assert "engine bug" in outcome.error
        assert not await snapshots.exists(KEY)
        assert get_metrics().faults_total == 1

    @pytest.mark.asyncio
    async def test_fail_step_clears_snapshot(
        self, machine, registry, snapshots, make_envelope, make_artifact, make_manifest
    ):
        registry.swap(
            "demo",
            PackCompositor().compose(
                "demo",
                make_artifact(
                    make_manifest(
                        "demo",
                        {"pay": {"steps": [{"await_input": "amount"}, {"fail": "card declined"}]}},
                        default_flow="pay",
                    )
                ),
            ),
        )
        await machine.advance(make_envelope("pay"), KEY)
        outcome = await machine.advance(make_envelope("12"), KEY)

        assert outcome.status is FlowStatus.FAULTED
        assert "card declined" in outcome.error
        assert not await snapshots.exists(KEY)


class TestConcurrency:
    """Events on one session key never interleave."""

    @pytest.mark.asyncio
    async def test_same_key_serialized(self, registry, snapshots, make_envelope):
        class SlowEngine:
            def __init__(self):
                self.active = 0
                self.peak = 0

            async def execute(self, flow, node_pointer, execution_state, envelope):
                self.active += 1
                self.peak = max(self.peak, self.active)
                await asyncio.sleep(0.01)
                self.active -= 1
                return Completed(outcome=envelope.text)

        engine = SlowEngine()
        machine = FlowStateMachine(registry, snapshots, engine=engine)
        outcomes = await asyncio.gather(
            *(machine.advance(make_envelope(str(i)), KEY) for i in range(5))
        )

        assert engine.peak == 1
        assert sorted(o.outcome for o in outcomes) == ["0", "1", "2", "3", "4"]

    @pytest.mark.asyncio
    async def test_abandon(self, machine, snapshots, make_envelope):
        await machine.advance(make_envelope("/approve"), KEY)
        assert await machine.abandon(KEY)
        assert await machine.state_of(KEY) is SessionState.ABSENT
        assert not await machine.abandon(KEY)
