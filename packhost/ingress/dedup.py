"""
Dedup Ledger.

Remembers provider event ids for a bounded retention window so adapter
retries do not advance a conversation twice.

    observe(event_id, tenant, provider) -> FRESH | DUPLICATE

Records live in the key-value store under
``dedup:{tenant}:{provider}:{event_id}`` (parts colon-escaped) and expire after
``retention_seconds``; the ledger never grows without bound. Recording
is a single set-if-absent, so two racing deliveries of one event get
exactly one FRESH between them.

An event without an id cannot be deduplicated and is always FRESH.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING

from packhost.ingress.session_key import escape_part

if TYPE_CHECKING:
    from packhost.storage.kv import KeyValueStore

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_SECONDS = 600.0


class Verdict(str, Enum):
    FRESH = "fresh"
    DUPLICATE = "duplicate"


@dataclass(frozen=True)
class DedupRecord:
    event_id: str
    tenant: str
    provider: str
    seen_at: datetime = field(default_factory=lambda: datetime.now(UTC))

    def to_json(self) -> str:
        data = asdict(self)
        data["seen_at"] = self.seen_at.isoformat()
        return json.dumps(data)

    @classmethod
    def from_json(cls, raw: str) -> DedupRecord:
        data = json.loads(raw)
        data["seen_at"] = datetime.fromisoformat(data["seen_at"])
        return cls(**data)


class DedupLedger:
    def __init__(
        self,
        store: KeyValueStore,
        retention_seconds: float = DEFAULT_RETENTION_SECONDS,
    ):
        if retention_seconds <= 0:
            raise ValueError("retention_seconds must be positive")
        self.store = store
        self.retention_seconds = retention_seconds

    @staticmethod
    def key(event_id: str, tenant: str, provider: str) -> str:
        parts = (tenant, provider.lower(), event_id)
        return "dedup:" + ":".join(escape_part(part) for part in parts)

    async def observe(self, event_id: str | None, tenant: str, provider: str) -> Verdict:
        if event_id is None or not str(event_id).strip():
            return Verdict.FRESH

        event_id = str(event_id).strip()
        record = DedupRecord(event_id=event_id, tenant=tenant, provider=provider.lower())
        stored = await self.store.add(
            self.key(event_id, tenant, provider),
            record.to_json(),
            ttl=self.retention_seconds,
        )
        if stored:
            return Verdict.FRESH

        logger.info(f"[dedup] Duplicate event {event_id} for {tenant}/{provider} suppressed")
        return Verdict.DUPLICATE

    async def lookup(self, event_id: str, tenant: str, provider: str) -> DedupRecord | None:
        raw = await self.store.get(self.key(event_id, tenant, provider))
        if raw is None:
            return None
        try:
            return DedupRecord.from_json(raw)
        except (ValueError, KeyError, TypeError) as e:
            logger.warning(f"[dedup] Unreadable record for {event_id}: {e}")
            return None

    async def forget(self, event_id: str, tenant: str, provider: str) -> bool:
        return await self.store.delete(self.key(event_id, tenant, provider))
