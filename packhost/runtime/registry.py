"""
Tenant Runtime Registry.

Process-wide table of tenant id to the currently live TenantRuntime.

Reads never lock: ``get`` dereferences one attribute holding an
immutable mapping. Writers build a new mapping under a lock and publish
it with a single reference assignment, so a reader sees the table as it
was before or after a swap, never in between.

A request that fetched a runtime keeps using that object for as long as
it holds the reference; the superseded runtime is reclaimed by the
garbage collector once the last such request finishes.
"""

from __future__ import annotations

import logging
import threading
from types import MappingProxyType
from typing import TYPE_CHECKING

from packhost.errors import RegistrySwapError, TenantNotFoundError

if TYPE_CHECKING:
    from collections.abc import Mapping

    from packhost.runtime.compositor import TenantRuntime

logger = logging.getLogger(__name__)


class TenantRuntimeRegistry:
    """Copy-on-write map of live tenant runtimes."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._table: Mapping[str, TenantRuntime] = MappingProxyType({})

    def get(self, tenant_id: str) -> TenantRuntime | None:
        return self._table.get(tenant_id)

    def require(self, tenant_id: str) -> TenantRuntime:
        runtime = self._table.get(tenant_id)
        if runtime is None:
            raise TenantNotFoundError(tenant_id)
        return runtime

    def swap(self, tenant_id: str, runtime: TenantRuntime) -> TenantRuntime | None:
        """Install ``runtime`` and return the handle it replaced."""
        if runtime.tenant_id != tenant_id:
            raise RegistrySwapError(
                f"Runtime for '{runtime.tenant_id}' cannot be installed as '{tenant_id}'",
                tenant=tenant_id,
            )
        with self._lock:
            previous = self._table.get(tenant_id)
            table = dict(self._table)
            table[tenant_id] = runtime
            self._table = MappingProxyType(table)

        logger.info(
            f"[registry] Swapped {tenant_id}: "
            f"{previous.fingerprint[:12] if previous else 'none'} -> {runtime.fingerprint[:12]}"
        )
        return previous

    def remove(self, tenant_id: str) -> TenantRuntime | None:
        with self._lock:
            if tenant_id not in self._table:
                return None
            table = dict(self._table)
            previous = table.pop(tenant_id)
            self._table = MappingProxyType(table)

        logger.info(f"[registry] Removed {tenant_id}")
        return previous

    def tenants(self) -> list[str]:
        return sorted(self._table)

    def snapshot(self) -> Mapping[str, TenantRuntime]:
        """The whole table as of now. Later swaps do not affect it."""
        return self._table

    def __contains__(self, tenant_id: object) -> bool:
        return tenant_id in self._table

    def __len__(self) -> int:
        return len(self._table)
