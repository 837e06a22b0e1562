"""Budget notifications.

Email delivery is not wired to a provider: ``EmailNotifier`` renders the
message and logs what it would send. Anything with the same two methods can
be passed to the alert engine instead.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, List, Protocol

import structlog

import config
from database import AlertType

if TYPE_CHECKING:
    from budgets import BudgetProgress

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Recipient:
    email: str
    name: str


@dataclass(frozen=True)
class EmailMessage:
    to: str
    subject: str
    text: str


class Notifier(Protocol):
    def send_budget_alert(self, recipient: Recipient, progress: "BudgetProgress", alert_type: AlertType) -> bool:
        ...

    def send_weekly_summary(self, recipient: Recipient, progress_list: List["BudgetProgress"]) -> bool:
        ...


def format_currency(amount: float) -> str:
    return f"${amount:,.2f}"


ALERT_HEADLINES = {
    AlertType.EXCEEDED: "has exceeded its limit",
    AlertType.WARNING: "has reached its alert threshold",
    AlertType.APPROACHING: "is approaching its alert threshold",
}


def render_budget_alert(recipient: Recipient, progress: "BudgetProgress", alert_type: AlertType) -> EmailMessage:
    budget = progress.budget
    subject = f"Budget alert: {budget.name} {ALERT_HEADLINES[alert_type]}"
    lines = [
        f"Hi {recipient.name},",
        "",
        f"Your budget \"{budget.name}\" {ALERT_HEADLINES[alert_type]}.",
        f"Spent: {format_currency(progress.spent)} of {format_currency(budget.amount)} ({progress.percentage:.0f}%)",
        f"Remaining: {format_currency(progress.remaining)} with {progress.days_remaining} days left",
        f"Projected spend this period: {format_currency(progress.projected_spend)}",
    ]
    return EmailMessage(to=recipient.email, subject=subject, text="\n".join(lines))


def render_weekly_summary(recipient: Recipient, progress_list: List["BudgetProgress"]) -> EmailMessage:
    over = sum(1 for p in progress_list if p.is_over_budget)
    lines = [f"Hi {recipient.name},", "", f"Here is your weekly budget summary ({len(progress_list)} budgets):", ""]
    for p in progress_list:
        flag = " [over budget]" if p.is_over_budget else ""
        lines.append(
            f"- {p.budget.name}: {format_currency(p.spent)} / {format_currency(p.budget.amount)} "
            f"({p.percentage:.0f}%){flag}"
        )
    subject = f"Weekly budget summary: {over} of {len(progress_list)} over budget"
    return EmailMessage(to=recipient.email, subject=subject, text="\n".join(lines))


class EmailNotifier:
    """Renders budget emails and logs the intent to send them."""

    def __init__(
        self,
        provider: str = config.EMAIL_PROVIDER,
        from_email: str = config.FROM_EMAIL,
        from_name: str = config.FROM_NAME,
    ):
        self.provider = provider
        self.from_email = from_email
        self.from_name = from_name

    def _deliver(self, message: EmailMessage) -> bool:
        # TODO: hand the message to the configured EMAIL_PROVIDER once an API key is provisioned
        logger.info(
            "email_delivery_disabled",
            provider=self.provider,
            sender=f"{self.from_name} <{self.from_email}>",
            to=message.to,
            subject=message.subject,
        )
        return True

    def send_budget_alert(self, recipient: Recipient, progress: "BudgetProgress", alert_type: AlertType) -> bool:
        return self._deliver(render_budget_alert(recipient, progress, alert_type))

    def send_weekly_summary(self, recipient: Recipient, progress_list: List["BudgetProgress"]) -> bool:
        return self._deliver(render_weekly_summary(recipient, progress_list))
