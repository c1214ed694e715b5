"""
PackHost facade.

Wires the data flow for one inbound event:

    envelope -> session key -> dedup ledger -> live runtime -> flow state machine

and exposes the admin operations (reload, status). Duplicates stop at
the ledger: the state machine is not called and nothing is written.

Usage:
    host = PackHost.from_settings(settings)
    await host.start()                 # first reconciliation + watcher
    result = await host.handle(envelope)
    report = await host.trigger_reload("demo")
    await host.stop()
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from packhost.flows.snapshot import SnapshotStore
from packhost.flows.state_machine import FlowOutcome, FlowStateMachine
from packhost.ingress.dedup import DedupLedger, Verdict
from packhost.ingress.session_key import derive
from packhost.observability import get_metrics
from packhost.packs.cache import ArtifactCache
from packhost.packs.index import PackIndexSource
from packhost.packs.resolver import build_resolver_registry
from packhost.packs.verify import IntegrityVerifier
from packhost.runtime.reconciler import Reconciler, ReloadReport
from packhost.runtime.registry import TenantRuntimeRegistry
from packhost.storage.kv import KeyValueStore, create_store

if TYPE_CHECKING:
    import httpx

    from packhost.config import AppSettings
    from packhost.flows.engine import ExecutionEngine
    from packhost.ingress.envelope import CanonicalIngressEnvelope
    from packhost.packs.resolver import ResolverRegistry

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandleResult:
    verdict: Verdict
    session_key: str
    outcome: FlowOutcome | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "session_key": self.session_key,
            "outcome": self.outcome.to_dict() if self.outcome else None,
        }


class PackHost:
    def __init__(
        self,
        *,
        registry: TenantRuntimeRegistry,
        reconciler: Reconciler,
        state_machine: FlowStateMachine,
        dedup: DedupLedger,
        store: KeyValueStore | None = None,
        resolvers: ResolverRegistry | None = None,
    ):
        self.registry = registry
        self.reconciler = reconciler
        self.state_machine = state_machine
        self.dedup = dedup
        self.store = store
        self.resolvers = resolvers

    @classmethod
    def from_settings(
        cls,
        settings: AppSettings,
        *,
        store: KeyValueStore | None = None,
        engine: ExecutionEngine | None = None,
        http_client: httpx.AsyncClient | None = None,
    ) -> PackHost:
        if not settings.pack_index_url:
            raise ValueError("pack_index_url is required (PACKHOST_PACK_INDEX_URL)")

        resolvers = build_resolver_registry(
            fetch_timeout=settings.fetch_timeout_seconds,
            max_attempts=settings.fetch_max_attempts,
            s3_endpoint=settings.s3_endpoint,
            azblob_account=settings.azblob_account,
            http_client=http_client,
        )
        registry = TenantRuntimeRegistry()
        reconciler = Reconciler(
            source=PackIndexSource(settings.pack_index_url, resolvers),
            resolvers=resolvers,
            verifier=IntegrityVerifier(settings.pack_public_key, settings.signature_policy),
            cache=ArtifactCache(
                settings.pack_cache_dir, max_disk_bytes=settings.pack_cache_max_disk_bytes
            ),
            registry=registry,
            interval=settings.refresh_interval_seconds,
            tenant_timeout=settings.reconcile_timeout_seconds,
        )

        if store is None:
            if settings.redis_url:
                store = create_store(
                    "redis", redis_url=settings.redis_url, key_prefix=settings.service_name
                )
            else:
                store = create_store("inmemory")

        return cls(
            registry=registry,
            reconciler=reconciler,
            state_machine=FlowStateMachine(
                registry,
                SnapshotStore(store, ttl_seconds=settings.session_ttl_seconds),
                engine=engine,
            ),
            dedup=DedupLedger(store, retention_seconds=settings.dedup_retention_seconds),
            store=store,
            resolvers=resolvers,
        )

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    async def start(self, *, watch: bool = True) -> ReloadReport:
        report = await self.reconciler.run_once()
        if not report.ok:
            logger.warning(
                f"[host] Initial reconciliation incomplete: "
                f"{report.error or ', '.join(report.failed)}"
            )
        if watch:
            self.reconciler.start()
        return report

    async def stop(self) -> None:
        await self.reconciler.stop()
        if self.resolvers is not None:
            await self.resolvers.close()
        close = getattr(self.store, "close", None)
        if close is not None:
            await close()

    # -------------------------------------------------------------------------
    # Ingress
    # -------------------------------------------------------------------------

    async def handle(self, envelope: CanonicalIngressEnvelope) -> HandleResult:
        key = derive(envelope)
        verdict = await self.dedup.observe(envelope.event_id, envelope.tenant, envelope.provider)
        get_metrics().record_event(duplicate=verdict is Verdict.DUPLICATE)
        if verdict is Verdict.DUPLICATE:
            return HandleResult(verdict=verdict, session_key=key)

        try:
            outcome = await self.state_machine.advance(envelope, key)
        except Exception:
            # Unprocessed events must stay retryable.
            if envelope.event_id:
                await self.dedup.forget(envelope.event_id, envelope.tenant, envelope.provider)
            logger.exception(f"[host] Event {envelope.event_id or '-'} for {key} failed")
            raise
        return HandleResult(verdict=verdict, session_key=key, outcome=outcome)

    async def abandon(self, session_key: str) -> bool:
        return await self.state_machine.abandon(session_key)

    # -------------------------------------------------------------------------
    # Admin
    # -------------------------------------------------------------------------

    async def trigger_reload(self, tenant: str | None = None) -> ReloadReport:
        return await self.reconciler.trigger_reload(tenant)

    def status(self) -> dict[str, Any]:
        """Per tenant: live packs and digests plus the last reload outcome."""
        live = self.registry.snapshot()
        reconcile_status = self.reconciler.status()
        tenants = {}
        for tenant in sorted(set(live) | set(reconcile_status)):
            runtime = live.get(tenant)
            status = reconcile_status.get(tenant)
            entry = status.to_dict() if status else {"tenant": tenant}
            if runtime is not None:
                entry.update(
                    {
                        "pack_id": runtime.pack_id,
                        "version": runtime.version,
                        "main_digest": runtime.main_digest,
                        "overlays": [
                            {"pack_id": pack_id, "version": version, "digest": digest}
                            for pack_id, version, digest in zip(
                                runtime.pack_ids[1:], runtime.versions[1:], runtime.overlay_digests
                            )
                        ],
                        "digests": list(runtime.digest_set),
                        "fingerprint": runtime.fingerprint,
                        "flows": sorted(runtime.flows),
                    }
                )
            tenants[tenant] = entry

        last_run = self.reconciler.last_run
        return {
            "tenants": tenants,
            "last_run": last_run.to_dict() if last_run else None,
            "watching": self.reconciler.running,
            "metrics": get_metrics().get_stats(),
        }
