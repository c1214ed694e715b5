"""
Admin endpoints: live status and on-demand reload.

When ``PACKHOST_ADMIN_TOKEN`` is set every route here requires
``Authorization: Bearer <token>``.
"""
from __future__ import annotations

import hmac
import logging
from typing import Any

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from packhost.app.dependencies import get_host, get_settings
from packhost.config import AppSettings
from packhost.host import PackHost

logger = logging.getLogger(__name__)


def require_admin(
    authorization: str | None = Header(default=None),
    settings: AppSettings = Depends(get_settings),
) -> None:
    if settings.admin_token is None:
        return

    expected = settings.admin_token.get_secret_value()
    scheme, _, token = (authorization or "").partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), expected):
        logger.warning("[admin] Rejected request with missing or invalid token")
        raise HTTPException(
            status_code=401,
            detail="Invalid admin token",
            headers={"WWW-Authenticate": "Bearer"},
        )


router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin)])


@router.get("/status")
async def status(host: PackHost = Depends(get_host)) -> dict[str, Any]:
    return host.status()


@router.post("/reload")
async def reload(
    tenant: str | None = Query(default=None),
    host: PackHost = Depends(get_host),
) -> dict[str, Any]:
    """Reconcile now, for one tenant or all of them."""
    report = await host.trigger_reload(tenant)
    logger.info(f"[admin] Reload requested for {tenant or 'all tenants'}: ok={report.ok}")
    return report.to_dict()
