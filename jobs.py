"""Background functions run by the scheduler and the event bus.

Each job takes the container it runs against and an optional ``now`` so it can
be driven by tests without touching the wall clock.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import TYPE_CHECKING, Any, Optional

from pydantic import ValidationError

from events import Event
from periods import previous_month
from ratelimit import Throttle
from recurrence import RecurringEngine
from schemas import RecurringWorkItem
from services import BudgetAlertService, ReportService, UserService

if TYPE_CHECKING:  # pragma: no cover
    from container import Container

logger = logging.getLogger(__name__)

RECURRING_EVENT = "transaction.recurring.process"


def register_handlers(container: Container) -> None:
    settings = container.settings
    container.bus.subscribe(
        RECURRING_EVENT,
        lambda data: process_recurring_transaction(container, data),
        throttle=Throttle(
            settings.recurring_throttle_limit,
            settings.recurring_throttle_period_secs,
        ),
        key=lambda data: data.get("userId"),
    )


def trigger_recurring_transactions(
    container: Container, now: Optional[datetime] = None
) -> int:
    now = now or container.clock()
    with container.database.session_scope() as session:
        due = RecurringEngine(session).due_transactions(now)
        events = [
            Event(RECURRING_EVENT, {"transactionId": txn.id, "userId": txn.user_id})
            for txn in due
        ]
    if events:
        container.bus.send(events)
    logger.info(f"recurring_discovery: triggered={len(events)}")
    return len(events)


def process_recurring_transaction(
    container: Container, data: dict[str, Any], now: Optional[datetime] = None
) -> bool:
    try:
        item = RecurringWorkItem.model_validate(data)
    except ValidationError:
        logger.error(f"recurring_process: invalid event data={data}")
        return False

    now = now or container.clock()
    with container.database.session() as session:
        posted = RecurringEngine(session).process(item.transaction_id, item.user_id, now)
        if posted is None:
            logger.info(
                f"recurring_process: transaction_id={item.transaction_id} skipped=not_due"
            )
            return False
        logger.info(
            f"recurring_process: transaction_id={item.transaction_id} "
            f"posted_id={posted.id} user_id={item.user_id}"
        )
    return True


def check_budget_alerts(container: Container, now: Optional[datetime] = None) -> int:
    now = now or container.clock()
    sent = 0
    with container.database.session() as session:
        service = BudgetAlertService(
            session, threshold=container.settings.budget_alert_threshold
        )
        alerts = service.due_alerts(now)
        for alert in alerts:
            try:
                container.mailer.send(
                    to=alert.user.email,
                    subject=f"Budget Alert for {alert.account.name}",
                    template_type="budget-alert",
                    user_name=alert.user.name,
                    data={
                        "percentage_used": alert.percentage_used,
                        "budget_amount": alert.budget.amount,
                        "total_expenses": alert.total_expenses,
                        "account_name": alert.account.name,
                    },
                )
                service.mark_sent(alert.budget, now)
            except Exception:
                logger.exception(f"budget_alert_failed: budget_id={alert.budget.id}")
                continue
            sent += 1
    logger.info(f"budget_alerts: due={len(alerts)} sent={sent}")
    return sent


def generate_monthly_reports(
    container: Container, now: Optional[datetime] = None
) -> int:
    now = now or container.clock()
    year, month = previous_month(now.date())
    month_name = datetime(year, month, 1).strftime("%B")

    processed = 0
    with container.database.session() as session:
        users = UserService(session).list_all()
        reports = ReportService(session)
        for user in users:
            try:
                stats = reports.monthly_stats(user.id, year, month)
                insights = container.insights.generate(stats, month_name)
                container.mailer.send(
                    to=user.email,
                    subject=f"Your Monthly Financial Report - {month_name}",
                    template_type="monthly-report",
                    user_name=user.name,
                    data={"stats": stats, "month": month_name, "insights": insights},
                )
            except Exception:
                logger.exception(f"monthly_report_failed: user_id={user.id}")
                continue
            processed += 1
    logger.info(f"monthly_reports: month={year:04d}-{month:02d} processed={processed}")
    return processed
