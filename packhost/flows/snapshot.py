"""
Flow snapshots: the persisted resumption point of a suspended session.

At most one snapshot per session key; it is stored under
``snapshot:{session_key}`` and written, read and deleted only by the
flow state machine while it holds that session's lock.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, Field, ValidationError

if TYPE_CHECKING:
    from packhost.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_SESSION_TTL_SECONDS = 86400.0


def _utc_now() -> datetime:
    return datetime.now(UTC)


class FlowSnapshot(BaseModel):
    """Where a suspended flow stopped and what it had accumulated."""

    session_key: str = Field(..., description="Session this snapshot belongs to")
    tenant: str = Field(..., description="Tenant whose runtime ran the flow")
    flow_id: str = Field(..., description="Flow to resume")
    node_pointer: str = Field(..., description="Engine-defined resume position")
    execution_state: dict[str, Any] = Field(default_factory=dict)
    runtime_fingerprint: str = Field(default="", description="Runtime that suspended the flow")
    suspended_at: datetime = Field(default_factory=_utc_now)
    reason: str | None = Field(default=None, description="Why the flow is waiting")


class SnapshotStore:
    """FlowSnapshot persistence on top of a KeyValueStore."""

    def __init__(
        self,
        store: KeyValueStore,
        ttl_seconds: float | None = DEFAULT_SESSION_TTL_SECONDS,
    ):
        self.store = store
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(session_key: str) -> str:
        return f"snapshot:{session_key}"

    async def save(self, snapshot: FlowSnapshot) -> None:
        await self.store.put(
            self.key(snapshot.session_key),
            snapshot.model_dump_json(),
            ttl=self.ttl_seconds,
        )

    async def load(self, session_key: str) -> FlowSnapshot | None:
        raw = await self.store.get(self.key(session_key))
        if raw is None:
            return None
        try:
            return FlowSnapshot.model_validate_json(raw)
        except ValidationError as e:
            # Unreadable snapshots are dropped; resuming from them is impossible.
            logger.warning(f"[snapshot] Discarding unreadable snapshot for {session_key}: {e}")
            await self.store.delete(self.key(session_key))
            return None

    async def delete(self, session_key: str) -> bool:
        return await self.store.delete(self.key(session_key))

    async def exists(self, session_key: str) -> bool:
        return await self.store.get(self.key(session_key)) is not None
