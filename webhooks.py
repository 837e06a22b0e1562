"""Plaid webhook handling: transaction update notices trigger a full sync."""

from __future__ import annotations

from typing import Any, Dict, Optional

import structlog
from pydantic import BaseModel

from sync import SyncPipeline

logger = structlog.get_logger(__name__)

TRANSACTION_UPDATE_CODES = {"INITIAL_UPDATE", "HISTORICAL_UPDATE", "DEFAULT_UPDATE"}


class WebhookPayload(BaseModel):
    webhook_type: str
    webhook_code: str
    item_id: Optional[str] = None


def is_transactions_update(payload: WebhookPayload) -> bool:
    return payload.webhook_type == "TRANSACTIONS" and payload.webhook_code in TRANSACTION_UPDATE_CODES


def handle_webhook(payload: WebhookPayload | Dict[str, Any], pipeline: SyncPipeline) -> Dict[str, Any]:
    if not isinstance(payload, WebhookPayload):
        payload = WebhookPayload.model_validate(payload)
    log = logger.bind(
        webhook_type=payload.webhook_type,
        webhook_code=payload.webhook_code,
        item_id=payload.item_id,
    )

    if not is_transactions_update(payload):
        log.info("webhook_ignored")
        return {"message": "Webhook processed successfully", "synced": False}

    log.info("webhook_received")
    report = pipeline.sync_all_accounts()
    return {"message": "Webhook processed successfully", "synced": True, "sync": report.summary()}
