"""Inbound gateway webhook endpoints."""
from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from alivehome.db import get_db
from alivehome.services import psp_webhooks
from alivehome.services.gateway_registry import GatewayRegistry, get_gateway_registry
from alivehome.utils.errors import SignatureInvalid, UnsupportedGateway, error_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments/webhooks", tags=["webhooks"])


@router.post("/{provider}", status_code=status.HTTP_200_OK)
async def gateway_webhook(
    provider: str,
    request: Request,
    db: Session = Depends(get_db),
    registry: GatewayRegistry = Depends(get_gateway_registry),
) -> dict[str, bool]:
    """Receive a provider callback on the exact bytes it signed."""

    raw_body = await request.body()
    headers = {k: v for k, v in request.headers.items()}

    try:
        result = await run_in_threadpool(
            psp_webhooks.process_webhook, db, provider, raw_body, headers, registry=registry
        )
    except UnsupportedGateway:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=error_response("UNSUPPORTED_GATEWAY", "Unsupported gateway."),
        )
    except SignatureInvalid:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=error_response("SIGNATURE_INVALID", "Invalid webhook signature."),
        )

    if result.outcome == psp_webhooks.OUTCOME_ERROR:
        logger.warning(
            "Webhook acknowledged without being applied",
            extra={"provider": provider, "error_code": result.error_code, "event_id": result.event_id},
        )
    return {"received": True}


__all__ = ["router"]
