"""Lightweight FastAPI surface over the sync pipeline and budget engine."""

from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import List, Optional

import structlog
from fastapi import Depends, FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from alerts import check_budget_alerts
from budgets import budget_summary, get_budget_progress
from database import BudgetAlert, get_db
from errors import NotFoundError, ProviderError, ValidationError
from logging_setup import setup_logging
from notifier import EmailNotifier, Notifier, Recipient
from plaid_integration import PlaidProvider
from sync import SyncPipeline
from webhooks import WebhookPayload, handle_webhook

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    logger.info("app_starting")
    yield
    logger.info("app_stopping")


app = FastAPI(title="Budget Sync Engine", version="0.1.0", lifespan=lifespan)


def get_pipeline() -> SyncPipeline:
    return SyncPipeline(PlaidProvider.from_env())


def get_notifier() -> Notifier:
    return EmailNotifier()


@app.exception_handler(NotFoundError)
async def not_found_handler(request: Request, exc: NotFoundError):
    return JSONResponse(status_code=404, content={"detail": exc.detail})


@app.exception_handler(ValidationError)
async def validation_handler(request: Request, exc: ValidationError):
    return JSONResponse(status_code=422, content={"detail": exc.detail, "errors": exc.errors})


@app.exception_handler(ProviderError)
async def provider_handler(request: Request, exc: ProviderError):
    return JSONResponse(status_code=502, content={"detail": exc.detail})


def alert_to_dict(alert: BudgetAlert) -> dict:
    return {
        "id": alert.id,
        "budget_id": alert.budget_id,
        "alert_type": alert.alert_type.value,
        "triggered_at": alert.triggered_at.isoformat(),
        "amount": alert.amount,
        "percentage": alert.percentage,
        "is_read": alert.is_read,
    }


@app.post("/webhooks/plaid")
def plaid_webhook(payload: WebhookPayload, pipeline: SyncPipeline = Depends(get_pipeline)):
    return handle_webhook(payload, pipeline)


@app.post("/sync")
def sync_all(pipeline: SyncPipeline = Depends(get_pipeline)):
    report = pipeline.sync_all_accounts()
    return {"summary": report.summary(), "results": [asdict(r) for r in report.results]}


@app.post("/accounts/{account_id}/sync")
def sync_one(account_id: int, pipeline: SyncPipeline = Depends(get_pipeline)):
    return asdict(pipeline.sync_account(account_id))


@app.get("/budgets/summary")
def summary(user_id: str, db: Session = Depends(get_db)):
    return asdict(budget_summary(db, user_id))


@app.get("/budgets/{budget_id}/progress")
def progress(budget_id: int, user_id: str, db: Session = Depends(get_db)):
    return get_budget_progress(db, budget_id, user_id).to_dict()


class AlertCheckRequest(BaseModel):
    user_id: str
    email: Optional[str] = None
    name: Optional[str] = None


class AlertCheckResponse(BaseModel):
    alerts: List[dict] = Field(default_factory=list)


@app.post("/budgets/alerts/check", response_model=AlertCheckResponse)
def check_alerts(
    req: AlertCheckRequest,
    db: Session = Depends(get_db),
    notifier: Notifier = Depends(get_notifier),
):
    recipient = Recipient(email=req.email, name=req.name) if req.email and req.name else None
    created = check_budget_alerts(db, req.user_id, notifier=notifier, recipient=recipient)
    return AlertCheckResponse(alerts=[alert_to_dict(a) for a in created])


@app.get("/health")
async def health():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("api_server:app", host="0.0.0.0", port=8001, reload=True)
