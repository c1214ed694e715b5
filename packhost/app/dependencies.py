"""
Dependency Injection for packhost.

Provides the settings singleton and the process-wide PackHost the
routers share.
"""
from __future__ import annotations

import logging
from functools import lru_cache

from packhost.config import AppSettings, settings_from_env
from packhost.host import PackHost

logger = logging.getLogger(__name__)


@lru_cache()
def get_settings() -> AppSettings:
    """
    Get application settings from environment.

    Uses lru_cache for singleton pattern.
    """
    return settings_from_env()


# Global instance (initialized at startup)
_host: PackHost | None = None


def get_host() -> PackHost:
    """Return the running host; fails before startup has built it."""
    if _host is None:
        raise RuntimeError("PackHost is not initialized")
    return _host


def set_host(host: PackHost | None) -> None:
    global _host
    _host = host


async def initialize_services() -> None:
    """
    Build the host from settings and run the first reconciliation.

    Called from FastAPI lifespan. Tenants that fail their first load are
    reported in the log; the watcher keeps retrying them.
    """
    global _host
    settings = get_settings()
    _host = PackHost.from_settings(settings)
    report = await _host.start(watch=True)
    logger.info(
        f"[app] Initial reconciliation: {len(report.applied)} applied, "
        f"{len(report.failed)} failed"
    )


async def shutdown_services() -> None:
    """
    Stop the watcher and release clients.

    Called from FastAPI lifespan.
    """
    global _host
    if _host is not None:
        await _host.stop()
        _host = None
