from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select

import jobs
from config import Settings
from container import build_container
from database import Database
from errors import ExternalServiceFailure
from events import EventBus
from gemini import FALLBACK_INSIGHTS
from models import Account, AccountType, Budget, RecurringInterval, Transaction, TransactionType
from schemas import AccountIn, BudgetIn, IdentityClaims, TransactionIn
from services import AccountService, BudgetService, TransactionService, UserService


class RecordingMailer:
    def __init__(self, fail_for=()):
        self.sent = []
        self.fail_for = set(fail_for)

    def send(self, to, subject, template_type, user_name, data):
        if to in self.fail_for:
            raise ExternalServiceFailure("smtp down")
        self.sent.append(
            {
                "to": to,
                "subject": subject,
                "template_type": template_type,
                "user_name": user_name,
                "data": data,
            }
        )


def _container(now: datetime, **settings_overrides):
    values = dict(database_url="sqlite://", timezone="UTC", auth_secret="test-secret")
    values.update(settings_overrides)
    settings = Settings(**values)
    database = Database(settings.database_url)
    database.create_all()
    container = build_container(settings, database)
    container.clock = lambda: now
    container.mailer = RecordingMailer()
    container.bus = EventBus(sleep=lambda _secs: None)
    jobs.register_handlers(container)
    return container


def _user_with_account(container, sub="user_1", balance="1000.00"):
    with container.database.session() as session:
        user = UserService(session).ensure_user(
            IdentityClaims(sub=sub, email=f"{sub}@example.com", name=sub.title())
        )
        account = AccountService(session, user.id).create(
            AccountIn(name="Main", type=AccountType.current, balance=Decimal(balance))
        )
        return user.id, account.id


def _add_transaction(container, user_id, account_id, amount, when, **kwargs):
    values = dict(
        type=TransactionType.expense,
        amount=Decimal(amount),
        description="Rent",
        date=when,
        account_id=account_id,
        category="housing",
    )
    values.update(kwargs)
    with container.database.session() as session:
        return TransactionService(session, user_id).create(TransactionIn(**values)).id


def _balance(container, account_id):
    with container.database.session() as session:
        return session.scalar(select(Account.balance).where(Account.id == account_id))


def _count(container):
    with container.database.session() as session:
        return session.scalar(select(func.count(Transaction.id)))


def test_recurring_discovery_and_processing_end_to_end():
    container = _container(datetime(2025, 6, 19))
    user_id, account_id = _user_with_account(container)
    _add_transaction(
        container,
        user_id,
        account_id,
        "100.00",
        datetime(2025, 5, 19),
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
    )
    assert _balance(container, account_id) == Decimal("900.00")

    assert jobs.trigger_recurring_transactions(container) == 1
    assert container.bus.pending() == 1
    assert container.bus.drain() == 1

    assert _count(container) == 2
    assert _balance(container, account_id) == Decimal("800.00")

    # already processed for this period
    assert jobs.trigger_recurring_transactions(container) == 0


def test_duplicate_work_items_post_once():
    container = _container(datetime(2025, 6, 19))
    user_id, account_id = _user_with_account(container)
    txn_id = _add_transaction(
        container,
        user_id,
        account_id,
        "100.00",
        datetime(2025, 5, 19),
        is_recurring=True,
        recurring_interval=RecurringInterval.monthly,
    )
    data = {"transactionId": txn_id, "userId": user_id}

    assert jobs.process_recurring_transaction(container, data) is True
    assert jobs.process_recurring_transaction(container, data) is False
    assert _count(container) == 2


def test_invalid_work_item_is_ignored():
    container = _container(datetime(2025, 6, 19))
    assert jobs.process_recurring_transaction(container, {"transactionId": "x"}) is False


def test_recurring_events_are_throttled_per_user():
    container = _container(datetime(2025, 6, 19), recurring_throttle_limit=1)
    user_id, account_id = _user_with_account(container)
    for _ in range(2):
        _add_transaction(
            container,
            user_id,
            account_id,
            "10.00",
            datetime(2025, 6, 1),
            is_recurring=True,
            recurring_interval=RecurringInterval.daily,
        )

    assert jobs.trigger_recurring_transactions(container) == 2
    assert container.bus.drain() == 1
    assert container.bus.pending() == 1


def test_budget_alert_job_sends_once_per_month():
    container = _container(datetime(2025, 5, 20))
    user_id, account_id = _user_with_account(container, balance="10000.00")
    with container.database.session() as session:
        BudgetService(session, user_id).upsert(BudgetIn(amount=Decimal("4000")))
    _add_transaction(container, user_id, account_id, "3400.00", datetime(2025, 5, 5))

    assert jobs.check_budget_alerts(container) == 1
    sent = container.mailer.sent[0]
    assert sent["subject"] == "Budget Alert for Main"
    assert sent["template_type"] == "budget-alert"
    assert sent["data"]["percentage_used"] == Decimal("85")
    assert sent["data"]["budget_amount"] == Decimal("4000.00")

    assert jobs.check_budget_alerts(container) == 0
    assert len(container.mailer.sent) == 1


def test_budget_alert_is_retried_when_delivery_fails():
    container = _container(datetime(2025, 5, 20))
    user_id, account_id = _user_with_account(container, balance="10000.00")
    with container.database.session() as session:
        BudgetService(session, user_id).upsert(BudgetIn(amount=Decimal("100")))
    _add_transaction(container, user_id, account_id, "95.00", datetime(2025, 5, 5))

    container.mailer = RecordingMailer(fail_for={"user_1@example.com"})
    assert jobs.check_budget_alerts(container) == 0
    with container.database.session() as session:
        assert session.scalar(select(Budget.last_alert_sent)) is None

    container.mailer = RecordingMailer()
    assert jobs.check_budget_alerts(container) == 1


def test_monthly_reports_cover_previous_month_and_skip_failures():
    container = _container(datetime(2025, 5, 1))
    ada_id, ada_account = _user_with_account(container, "ada")
    _user_with_account(container, "bob")
    _add_transaction(
        container,
        ada_id,
        ada_account,
        "5000.00",
        datetime(2025, 4, 1),
        type=TransactionType.income,
        category="salary",
    )
    _add_transaction(container, ada_id, ada_account, "1200.00", datetime(2025, 4, 3))
    container.mailer = RecordingMailer(fail_for={"bob@example.com"})

    assert jobs.generate_monthly_reports(container) == 1

    sent = container.mailer.sent[0]
    assert sent["to"] == "ada@example.com"
    assert sent["subject"] == "Your Monthly Financial Report - April"
    assert sent["data"]["month"] == "April"
    assert sent["data"]["stats"].total_income == Decimal("5000.00")
    assert sent["data"]["stats"].by_category == {"housing": Decimal("1200.00")}
    assert sent["data"]["insights"] == FALLBACK_INSIGHTS
