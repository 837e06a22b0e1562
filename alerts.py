"""Budget alert engine.

Alerts are deduplicated per budget and kind over a rolling window. The read
check handles the sequential case; evaluations racing past it are settled
by the per-(budget, kind) slot in ``budget_alert_slots``, which only one of
them can move forward.
"""

from __future__ import annotations

import math
from datetime import date, datetime, timedelta
from typing import Callable, Dict, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import config
from budgets import BudgetProgress, calculate_progress, get_all_budget_progress, list_budgets
from database import AlertType, Budget, BudgetAlert, BudgetAlertSlot, SessionLocal, utcnow
from errors import FinanceTrackerError, NotFoundError
from notifier import Notifier, Recipient

logger = structlog.get_logger(__name__)

DEDUP_WINDOW = timedelta(hours=config.ALERT_DEDUP_HOURS)


def classify_alert(
    percentage: float,
    alert_threshold: int,
    approaching_margin: int = config.APPROACHING_MARGIN,
) -> Optional[AlertType]:
    if percentage >= 100:
        return AlertType.EXCEEDED
    if percentage >= alert_threshold:
        return AlertType.WARNING
    if percentage >= alert_threshold - approaching_margin:
        return AlertType.APPROACHING
    return None


def round_percentage(percentage: float) -> int:
    # half-up, so 79.5 -> 80 and 80.5 -> 81
    return int(math.floor(percentage + 0.5))


def _claim_alert_slot(
    db: Session,
    budget_id: int,
    alert_type: AlertType,
    now: datetime,
    dedup_window: timedelta,
) -> None:
    """Move the (budget, kind) slot to ``now`` unless it fired within ``dedup_window``.

    Raises ``IntegrityError`` when the slot is taken: the conditional UPDATE
    matches nothing, and inserting a fresh slot collides with the existing
    primary key.
    """
    claimed = (
        db.query(BudgetAlertSlot)
        .filter(
            BudgetAlertSlot.budget_id == budget_id,
            BudgetAlertSlot.alert_type == alert_type,
            BudgetAlertSlot.last_triggered_at < now - dedup_window,
        )
        .update({BudgetAlertSlot.last_triggered_at: now}, synchronize_session=False)
    )
    if not claimed:
        db.add(BudgetAlertSlot(budget_id=budget_id, alert_type=alert_type, last_triggered_at=now))
        db.flush()


def record_alert(
    db: Session,
    progress: BudgetProgress,
    alert_type: AlertType,
    *,
    now: Optional[datetime] = None,
    dedup_window: timedelta = DEDUP_WINDOW,
) -> Optional[BudgetAlert]:
    """Persist an alert unless one of the same kind fired within ``dedup_window``."""
    now = now or utcnow()
    budget_id = progress.budget.id
    log = logger.bind(budget_id=budget_id, alert_type=alert_type.value)

    recent = (
        db.query(BudgetAlert.id)
        .filter(
            BudgetAlert.budget_id == budget_id,
            BudgetAlert.alert_type == alert_type,
            BudgetAlert.triggered_at >= now - dedup_window,
        )
        .first()
    )
    if recent is not None:
        log.info("alert_suppressed", reason="recent_alert", existing_alert_id=recent.id)
        return None

    alert = BudgetAlert(
        budget_id=budget_id,
        alert_type=alert_type,
        triggered_at=now,
        amount=progress.spent,
        percentage=round_percentage(progress.percentage),
    )
    try:
        with db.begin_nested():
            _claim_alert_slot(db, budget_id, alert_type, now, dedup_window)
            db.add(alert)
    except IntegrityError:
        log.info("alert_suppressed", reason="concurrent_insert")
        return None
    db.commit()
    log.info("alert_created", alert_id=alert.id, spent=progress.spent, percentage=alert.percentage)
    return alert


def evaluate_budget(
    db: Session,
    progress: BudgetProgress,
    *,
    notifier: Optional[Notifier] = None,
    recipient: Optional[Recipient] = None,
    now: Optional[datetime] = None,
) -> Optional[BudgetAlert]:
    """Create (and announce) the alert the progress calls for, if any.

    Notification is best-effort: a notifier failure is logged and the stored
    alert is kept.
    """
    alert_type = classify_alert(progress.percentage, progress.budget.alert_threshold)
    if alert_type is None:
        return None

    alert = record_alert(db, progress, alert_type, now=now)
    if alert is None or notifier is None or recipient is None:
        return alert

    try:
        notifier.send_budget_alert(recipient, progress, alert_type)
    except Exception:
        logger.exception("alert_notification_failed", alert_id=alert.id, budget_id=progress.budget.id)
    return alert


def check_budget_alerts(
    db: Session,
    user_id: str,
    *,
    notifier: Optional[Notifier] = None,
    recipient: Optional[Recipient] = None,
    as_of: Optional[date] = None,
    now: Optional[datetime] = None,
) -> List[BudgetAlert]:
    """Evaluate every active budget of the user and return the alerts created.

    A budget that cannot be evaluated is logged and skipped.
    """
    now = now or utcnow()
    as_of = as_of or now.date()
    created = []
    for budget in list_budgets(db, user_id, is_active=True):
        try:
            progress = calculate_progress(db, budget, as_of)
            alert = evaluate_budget(db, progress, notifier=notifier, recipient=recipient, now=now)
        except (FinanceTrackerError, SQLAlchemyError) as exc:
            db.rollback()
            logger.error("budget_evaluation_failed", budget_id=budget.id, error=str(exc))
            continue
        if alert is not None:
            created.append(alert)
    return created


def placeholder_recipient(user_id: str) -> Recipient:
    return Recipient(email=f"user-{user_id}@example.com", name=f"User {user_id}")


def check_alerts_for_all_users(
    session_factory: Callable[[], Session] = SessionLocal,
    *,
    notifier: Optional[Notifier] = None,
    recipient_for: Callable[[str], Recipient] = placeholder_recipient,
    now: Optional[datetime] = None,
) -> Dict[str, int]:
    """Scheduled sweep over every user owning an active budget."""
    with session_factory() as db:
        user_ids = db.execute(
            select(Budget.user_id).where(Budget.is_active.is_(True)).distinct()
        ).scalars().all()

    success = failed = 0
    for user_id in user_ids:
        try:
            with session_factory() as db:
                check_budget_alerts(db, user_id, notifier=notifier, recipient=recipient_for(user_id), now=now)
            success += 1
        except Exception:
            logger.exception("user_alert_check_failed", user_id=user_id)
            failed += 1

    logger.info("alert_sweep_completed", success=success, failed=failed)
    return {"success": success, "failed": failed}


def send_weekly_summary(
    db: Session,
    user_id: str,
    recipient: Recipient,
    notifier: Notifier,
    as_of: Optional[date] = None,
) -> bool:
    progress_list = get_all_budget_progress(db, user_id, as_of)
    if not progress_list:
        logger.info("weekly_summary_skipped", user_id=user_id, reason="no_budgets")
        return False
    try:
        sent = notifier.send_weekly_summary(recipient, progress_list)
    except Exception:
        logger.exception("weekly_summary_failed", user_id=user_id)
        return False
    return bool(sent)


# --- Alert history ---

def _user_budget_ids(user_id: str):
    return select(Budget.id).where(Budget.user_id == user_id)


def get_unread_alerts(db: Session, user_id: str) -> List[BudgetAlert]:
    return (
        db.query(BudgetAlert)
        .filter(BudgetAlert.budget_id.in_(_user_budget_ids(user_id)), BudgetAlert.is_read.is_(False))
        .order_by(BudgetAlert.triggered_at.desc(), BudgetAlert.id.desc())
        .all()
    )


def mark_alert_read(db: Session, alert_id: int, user_id: str) -> BudgetAlert:
    alert = (
        db.query(BudgetAlert)
        .filter(BudgetAlert.id == alert_id, BudgetAlert.budget_id.in_(_user_budget_ids(user_id)))
        .first()
    )
    if alert is None:
        raise NotFoundError("Alert", alert_id)
    alert.is_read = True
    db.commit()
    return alert


def mark_alerts_read(db: Session, alert_ids: List[int], user_id: str) -> int:
    if not alert_ids:
        return 0
    count = (
        db.query(BudgetAlert)
        .filter(BudgetAlert.id.in_(alert_ids), BudgetAlert.budget_id.in_(_user_budget_ids(user_id)))
        .update({BudgetAlert.is_read: True}, synchronize_session=False)
    )
    db.commit()
    return count
