"""
Tenant runtimes: composition, the live registry and the reconciler
that keeps the registry in step with the pack index.
"""

from .compositor import PackCompositor, PackManifest, RouteRule, TenantRuntime
from .reconciler import (
    Reconciler,
    ReconcilePhase,
    ReloadOutcome,
    ReloadReport,
    TenantReloadResult,
    TenantStatus,
)
from .registry import TenantRuntimeRegistry

__all__ = [
    "PackCompositor",
    "PackManifest",
    "RouteRule",
    "TenantRuntime",
    "Reconciler",
    "ReconcilePhase",
    "ReloadOutcome",
    "ReloadReport",
    "TenantReloadResult",
    "TenantStatus",
    "TenantRuntimeRegistry",
]
