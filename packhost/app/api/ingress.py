"""
Ingress endpoint.

Channel adapters normalize provider webhooks into the canonical
envelope and post it here. The response carries the dedup verdict, the
derived session key and the flow outcome (absent for duplicates).
"""
from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends

from packhost.app.dependencies import get_host
from packhost.host import PackHost
from packhost.ingress.envelope import CanonicalIngressEnvelope

logger = logging.getLogger(__name__)

router = APIRouter(tags=["ingress"])


@router.post("/ingress")
async def ingest(
    envelope: CanonicalIngressEnvelope,
    host: PackHost = Depends(get_host),
) -> dict[str, Any]:
    result = await host.handle(envelope)
    if result.outcome is not None and not result.outcome.ok:
        logger.warning(
            f"[ingress] {result.session_key}: {result.outcome.status.value} "
            f"({result.outcome.error})"
        )
    return result.to_dict()


@router.delete("/sessions/{session_key}")
async def abandon_session(
    session_key: str,
    host: PackHost = Depends(get_host),
) -> dict[str, Any]:
    """Drop a suspended conversation. The key is sent percent-encoded."""
    removed = await host.abandon(session_key)
    return {"session_key": session_key, "removed": removed}
