"""
Reconciler (Watcher).

Drives the desired state in the pack index into the runtime registry.

Each run:
    1. load the index (a failure here fails the run, nothing changes)
    2. for every tenant whose main+overlay digest set differs from the
       last applied set: resolve -> verify -> compose -> swap
    3. drop tenants that disappeared from the index

Per-tenant phases: IDLE -> RESOLVING -> VERIFYING -> COMPOSING -> SWAPPING -> IDLE

Failure containment:
    - a tenant failure is logged and recorded; its previous runtime
      stays live and the next tick tries again
    - a tenant that exceeds ``tenant_timeout`` is abandoned for this run
    - tenants are reconciled concurrently, so one slow or broken tenant
      never holds up the others
    - nothing escapes the periodic loop

Runs never overlap: the timer and manual reloads share one lock.

Usage:
    reconciler = Reconciler(
        source=PackIndexSource(url, resolvers),
        resolvers=resolvers,
        verifier=IntegrityVerifier(public_key),
        cache=ArtifactCache(".packs"),
        registry=TenantRuntimeRegistry(),
    )
    report = await reconciler.run_once()
    reconciler.start()          # periodic ticks
    ...
    await reconciler.stop()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any, Protocol

from packhost.errors import PackHostError
from packhost.observability import get_metrics
from packhost.packs.models import VerifiedArtifact
from packhost.runtime.compositor import PackCompositor

if TYPE_CHECKING:
    from collections.abc import Iterable

    from packhost.packs.cache import ArtifactCache
    from packhost.packs.models import PackEntry, PackIndex, TenantIndexEntry
    from packhost.packs.resolver import ResolverRegistry
    from packhost.packs.verify import IntegrityVerifier
    from packhost.runtime.registry import TenantRuntimeRegistry

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(UTC)


class IndexSource(Protocol):
    """Anything that can produce the current desired state."""

    async def load(self) -> PackIndex:
        ...


class ReconcilePhase(str, Enum):
    IDLE = "idle"
    RESOLVING = "resolving"
    VERIFYING = "verifying"
    COMPOSING = "composing"
    SWAPPING = "swapping"


class ReloadOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    FAILED = "failed"
    REMOVED = "removed"


# =============================================================================
# Reports
# =============================================================================


@dataclass
class TenantStatus:
    """What is live for a tenant and how the last reload went."""

    tenant: str
    phase: ReconcilePhase = ReconcilePhase.IDLE
    digests: tuple[str, ...] = ()
    fingerprint: str | None = None
    last_reload_at: datetime | None = None
    last_checked_at: datetime | None = None
    last_outcome: ReloadOutcome | None = None
    last_error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "phase": self.phase.value,
            "digests": list(self.digests),
            "fingerprint": self.fingerprint,
            "last_reload_at": self.last_reload_at.isoformat() if self.last_reload_at else None,
            "last_checked_at": self.last_checked_at.isoformat() if self.last_checked_at else None,
            "last_outcome": self.last_outcome.value if self.last_outcome else None,
            "last_error": self.last_error,
        }


@dataclass(frozen=True)
class TenantReloadResult:
    tenant: str
    outcome: ReloadOutcome
    digests: tuple[str, ...] = ()
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.outcome is not ReloadOutcome.FAILED

    def to_dict(self) -> dict[str, Any]:
        return {
            "tenant": self.tenant,
            "outcome": self.outcome.value,
            "digests": list(self.digests),
            "error": self.error,
        }


@dataclass
class ReloadReport:
    """Per-tenant results of one reconciliation run."""

    started_at: datetime = field(default_factory=_utc_now)
    finished_at: datetime | None = None
    results: list[TenantReloadResult] = field(default_factory=list)
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and all(r.ok for r in self.results)

    @property
    def applied(self) -> list[str]:
        return [r.tenant for r in self.results if r.outcome is ReloadOutcome.APPLIED]

    @property
    def failed(self) -> list[str]:
        return [r.tenant for r in self.results if r.outcome is ReloadOutcome.FAILED]

    def result_for(self, tenant: str) -> TenantReloadResult | None:
        return next((r for r in self.results if r.tenant == tenant), None)

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "error": self.error,
            "tenants": [r.to_dict() for r in self.results],
        }


# =============================================================================
# Reconciler
# =============================================================================


class Reconciler:
    """Owns the applied digest sets; the only writer to the registry."""

    def __init__(
        self,
        *,
        source: IndexSource,
        resolvers: ResolverRegistry,
        verifier: IntegrityVerifier,
        cache: ArtifactCache,
        registry: TenantRuntimeRegistry,
        compositor: PackCompositor | None = None,
        interval: float = 30.0,
        tenant_timeout: float | None = 60.0,
    ):
        self.source = source
        self.resolvers = resolvers
        self.verifier = verifier
        self.cache = cache
        self.registry = registry
        self.compositor = compositor or PackCompositor()
        self.interval = interval
        self.tenant_timeout = tenant_timeout

        self._applied: dict[str, tuple[str, ...]] = {}
        self._status: dict[str, TenantStatus] = {}
        self._run_lock = asyncio.Lock()
        self._task: asyncio.Task[None] | None = None

        self.last_run: ReloadReport | None = None

    # -------------------------------------------------------------------------
    # Admin surface
    # -------------------------------------------------------------------------

    def status(self) -> dict[str, TenantStatus]:
        return dict(self._status)

    async def trigger_reload(self, tenant: str | None = None) -> ReloadReport:
        """Manual reload: same sequence as a tick, reported to the caller."""
        logger.info(f"[reconciler] Manual reload requested ({tenant or 'all tenants'})")
        return await self.run_once([tenant] if tenant else None)

    # -------------------------------------------------------------------------
    # One run
    # -------------------------------------------------------------------------

    async def run_once(self, tenants: Iterable[str] | None = None) -> ReloadReport:
        async with self._run_lock:
            report = ReloadReport()
            try:
                index = await self.source.load()
            except Exception as e:
                report.error = f"Index load failed: {e}"
                report.finished_at = _utc_now()
                self.last_run = report
                get_metrics().record_reload(failures=1, swaps=0)
                logger.error(f"[reconciler] {report.error}")
                return report

            wanted = set(tenants) if tenants is not None else None
            entries = [
                entry
                for tenant_id, entry in index.tenants.items()
                if wanted is None or tenant_id in wanted
            ]

            results = await asyncio.gather(*(self._reconcile_with_timeout(e) for e in entries))
            report.results.extend(results)
            report.results.extend(self._prune(index, wanted))

            report.finished_at = _utc_now()
            self.last_run = report
            get_metrics().record_reload(
                failures=len(report.failed), swaps=len(report.applied)
            )
            logger.info(
                f"[reconciler] Run finished: {len(report.applied)} applied, "
                f"{len(report.failed)} failed, {len(report.results)} checked"
            )
            return report

    def _prune(self, index: PackIndex, wanted: set[str] | None) -> list[TenantReloadResult]:
        results: list[TenantReloadResult] = []
        live = set(self.registry.tenants()) | set(self._applied)
        candidates = live if wanted is None else live & wanted

        for tenant in sorted(candidates - set(index.tenants)):
            self.registry.remove(tenant)
            self._applied.pop(tenant, None)
            self._status.pop(tenant, None)
            logger.info(f"[reconciler] {tenant} no longer in index, removed")
            results.append(TenantReloadResult(tenant=tenant, outcome=ReloadOutcome.REMOVED))

        if wanted is not None:
            for tenant in sorted(wanted - set(index.tenants) - live):
                results.append(
                    TenantReloadResult(
                        tenant=tenant,
                        outcome=ReloadOutcome.FAILED,
                        error="Tenant is not present in the index",
                    )
                )
        return results

    async def _reconcile_with_timeout(self, entry: TenantIndexEntry) -> TenantReloadResult:
        tenant = entry.tenant_id
        status = self._status.setdefault(tenant, TenantStatus(tenant=tenant))
        status.last_checked_at = _utc_now()

        try:
            return await asyncio.wait_for(self._reconcile(entry, status), self.tenant_timeout)
        except TimeoutError:
            error = f"Reload exceeded {self.tenant_timeout}s"
        except PackHostError as e:
            error = str(e)
        except Exception as e:
            logger.exception(f"[reconciler] Unexpected failure reloading {tenant}")
            error = f"{type(e).__name__}: {e}"

        status.phase = ReconcilePhase.IDLE
        status.last_reload_at = _utc_now()
        status.last_outcome = ReloadOutcome.FAILED
        status.last_error = error
        logger.error(
            f"[reconciler] {tenant} stays on "
            f"{status.digests[0] if status.digests else 'no runtime'}: {error}"
        )
        return TenantReloadResult(
            tenant=tenant,
            outcome=ReloadOutcome.FAILED,
            digests=entry.digest_set,
            error=error,
        )

    async def _reconcile(self, entry: TenantIndexEntry, status: TenantStatus) -> TenantReloadResult:
        tenant = entry.tenant_id
        desired = entry.digest_set

        if self._applied.get(tenant) == desired and tenant in self.registry:
            return TenantReloadResult(tenant=tenant, outcome=ReloadOutcome.UNCHANGED, digests=desired)

        logger.info(f"[reconciler] {tenant} changed, loading {len(desired)} artifacts")

        status.phase = ReconcilePhase.RESOLVING
        artifacts = [await self._materialize(tenant, pack, status) for pack in entry.entries]

        status.phase = ReconcilePhase.COMPOSING
        runtime = self.compositor.compose(tenant, artifacts[0], artifacts[1:])

        status.phase = ReconcilePhase.SWAPPING
        self.registry.swap(tenant, runtime)
        self._applied[tenant] = desired

        status.phase = ReconcilePhase.IDLE
        status.digests = desired
        status.fingerprint = runtime.fingerprint
        status.last_reload_at = _utc_now()
        status.last_outcome = ReloadOutcome.APPLIED
        status.last_error = None
        return TenantReloadResult(tenant=tenant, outcome=ReloadOutcome.APPLIED, digests=desired)

    async def _materialize(
        self,
        tenant: str,
        pack: PackEntry,
        status: TenantStatus,
    ) -> VerifiedArtifact:
        async def fetch() -> VerifiedArtifact:
            status.phase = ReconcilePhase.RESOLVING
            data = await self.resolvers.resolve(pack.locator)
            status.phase = ReconcilePhase.VERIFYING
            self.verifier.verify(data, pack.digest, pack.signature, tenant=tenant)
            return VerifiedArtifact(digest=pack.digest, data=data)

        return await self.cache.get_or_fetch(pack.digest, fetch)

    # -------------------------------------------------------------------------
    # Periodic loop
    # -------------------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._loop(), name="packhost-reconciler")
        logger.info(f"[reconciler] Watching index every {self.interval}s")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        logger.info("[reconciler] Stopped")

    async def _loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.run_once()
            except Exception:
                logger.exception("[reconciler] Run crashed; retrying next tick")
