from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, joinedload

from database import atomic
from errors import NotFound, ValidationFailed
from models import (
    Account,
    Budget,
    Transaction,
    TransactionType,
    User,
)
from periods import Period, month_end, month_start, utcnow
from recurrence import next_recurring_date
from schemas import AccountIn, BudgetIn, IdentityClaims, TransactionIn

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


def to_money(value: object) -> Decimal:
    if value is None:
        return Decimal("0.00")
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT)


def signed_amount(txn_type: TransactionType, amount: Decimal) -> Decimal:
    if txn_type == TransactionType.expense:
        return -to_money(amount)
    return to_money(amount)


def apply_balance_change(session: Session, account_id: int, delta: Decimal) -> None:
    """Add ``delta`` to the stored balance with a single UPDATE."""
    if not delta:
        return
    session.execute(
        update(Account)
        .where(Account.id == account_id)
        .values(balance=Account.balance + delta)
    )


def sum_expenses(
    session: Session,
    user_id: int,
    account_id: int,
    start: datetime,
    end: datetime,
) -> Decimal:
    total = session.execute(
        select(func.coalesce(func.sum(Transaction.amount), 0)).where(
            Transaction.user_id == user_id,
            Transaction.account_id == account_id,
            Transaction.type == TransactionType.expense,
            Transaction.date >= start,
            Transaction.date <= end,
        )
    ).scalar_one()
    return to_money(total)


class UserService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def ensure_user(self, claims: IdentityClaims) -> User:
        existing = self.session.scalar(
            select(User).where(User.external_id == claims.sub)
        )
        if existing:
            return existing

        user = User(
            external_id=claims.sub,
            email=claims.email,
            name=claims.name,
            image_url=claims.image,
        )
        self.session.add(user)
        try:
            self.session.commit()
        except IntegrityError as exc:
            self.session.rollback()
            # created by a concurrent first request for the same identity
            existing = self.session.scalar(
                select(User).where(User.external_id == claims.sub)
            )
            if existing is None:
                logger.warning(f"user_conflict: external_id={claims.sub}")
                raise ValidationFailed("Email is already registered") from exc
            return existing
        logger.info(f"user_created: id={user.id}")
        return user

    def list_all(self) -> list[User]:
        return list(self.session.scalars(select(User).order_by(User.id)).all())


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> Account:
        account = self.session.get(Account, account_id)
        if not account or account.user_id != self.user_id:
            raise NotFound("Account not found")
        return account

    def default_account(self) -> Optional[Account]:
        return self.session.scalar(
            select(Account).where(
                Account.user_id == self.user_id, Account.is_default.is_(True)
            )
        )

    def create(self, data: AccountIn) -> Account:
        with atomic(self.session):
            existing = self.session.execute(
                select(func.count(Account.id)).where(Account.user_id == self.user_id)
            ).scalar_one()
            should_be_default = existing == 0 or data.is_default
            if should_be_default:
                self._clear_defaults()
            account = Account(
                user_id=self.user_id,
                name=data.name,
                type=data.type,
                balance=to_money(data.balance),
                is_default=should_be_default,
            )
            self.session.add(account)
            self.session.flush()
        return account

    def list_with_counts(self) -> list[tuple[Account, int]]:
        stmt = (
            select(Account, func.count(Transaction.id))
            .outerjoin(Transaction, Transaction.account_id == Account.id)
            .where(Account.user_id == self.user_id)
            .group_by(Account.id)
            .order_by(Account.created_at.desc(), Account.id.desc())
        )
        return [(account, int(count)) for account, count in self.session.execute(stmt)]

    def get_with_transactions(self, account_id: int) -> tuple[Account, list[Transaction]]:
        account = self.get(account_id)
        transactions = self.session.scalars(
            select(Transaction)
            .where(
                Transaction.account_id == account.id,
                Transaction.user_id == self.user_id,
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
        ).all()
        return account, list(transactions)

    def set_default(self, account_id: int) -> Account:
        account = self.get(account_id)
        with atomic(self.session):
            self._clear_defaults()
            account.is_default = True
            self.session.flush()
        return account

    def delete(self, account_id: int) -> None:
        account = self.get(account_id)
        with atomic(self.session):
            was_default = account.is_default
            self.session.delete(account)
            self.session.flush()
            if was_default:
                replacement = self.session.scalar(
                    select(Account)
                    .where(Account.user_id == self.user_id)
                    .order_by(Account.created_at.desc(), Account.id.desc())
                    .limit(1)
                )
                if replacement:
                    replacement.is_default = True

    def _clear_defaults(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )


class TransactionService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.accounts = AccountService(session, user_id)

    def get(self, transaction_id: int) -> Transaction:
        txn = self.session.scalar(
            select(Transaction).where(
                Transaction.id == transaction_id,
                Transaction.user_id == self.user_id,
            )
        )
        if not txn:
            raise NotFound("Transaction not found")
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        account = self.accounts.get(data.account_id)
        with atomic(self.session):
            txn = Transaction(
                user_id=self.user_id,
                account_id=account.id,
                type=data.type,
                amount=to_money(data.amount),
                description=data.description,
                date=data.date,
                category=data.category,
                is_recurring=data.is_recurring,
                recurring_interval=data.recurring_interval,
                next_recurring_date=self._next_date(data),
            )
            self.session.add(txn)
            apply_balance_change(
                self.session, account.id, signed_amount(data.type, data.amount)
            )
            self.session.flush()
        return txn

    def update(self, transaction_id: int, data: TransactionIn) -> Transaction:
        txn = self.get(transaction_id)
        new_account = self.accounts.get(data.account_id)

        old_account_id = txn.account_id
        old_signed = signed_amount(txn.type, txn.amount)
        new_signed = signed_amount(data.type, data.amount)

        with atomic(self.session):
            txn.account_id = new_account.id
            txn.type = data.type
            txn.amount = to_money(data.amount)
            txn.description = data.description
            txn.date = data.date
            txn.category = data.category
            txn.is_recurring = data.is_recurring
            txn.recurring_interval = data.recurring_interval
            txn.next_recurring_date = self._next_date(data)

            if old_account_id == new_account.id:
                apply_balance_change(
                    self.session, new_account.id, new_signed - old_signed
                )
            else:
                apply_balance_change(self.session, old_account_id, -old_signed)
                apply_balance_change(self.session, new_account.id, new_signed)
            self.session.flush()
        return txn

    def bulk_delete(self, transaction_ids: list[int]) -> int:
        ids = set(transaction_ids)
        txns = self.session.scalars(
            select(Transaction).where(
                Transaction.id.in_(ids), Transaction.user_id == self.user_id
            )
        ).all()
        if len(txns) != len(ids):
            raise NotFound("Transaction not found")

        reversals: dict[int, Decimal] = defaultdict(Decimal)
        for txn in txns:
            reversals[txn.account_id] -= signed_amount(txn.type, txn.amount)

        with atomic(self.session):
            self.session.execute(
                delete(Transaction).where(
                    Transaction.id.in_(ids), Transaction.user_id == self.user_id
                )
            )
            for account_id, change in reversals.items():
                apply_balance_change(self.session, account_id, change)
        logger.info(
            f"transactions_deleted: user_id={self.user_id} count={len(ids)} "
            f"accounts={len(reversals)}"
        )
        return len(ids)

    def list(
        self,
        period: Optional[Period] = None,
        account_id: Optional[int] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.account))
            .where(Transaction.user_id == self.user_id)
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        if period:
            stmt = stmt.where(Transaction.date.between(period.start, period.end))
        if account_id:
            stmt = stmt.where(Transaction.account_id == account_id)
        return list(self.session.scalars(stmt).all())

    @staticmethod
    def _next_date(data: TransactionIn) -> Optional[datetime]:
        if data.is_recurring and data.recurring_interval:
            return next_recurring_date(data.date, data.recurring_interval)
        return None


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self) -> Optional[Budget]:
        return self.session.scalar(select(Budget).where(Budget.user_id == self.user_id))

    def upsert(self, data: BudgetIn) -> Budget:
        with atomic(self.session):
            budget = self.get()
            if budget:
                budget.amount = to_money(data.amount)
            else:
                budget = Budget(user_id=self.user_id, amount=to_money(data.amount))
                self.session.add(budget)
            self.session.flush()
        return budget

    def current(
        self, account_id: int, now: Optional[datetime] = None
    ) -> tuple[Optional[Budget], Decimal]:
        """The budget and this calendar month's expenses on one account."""
        account = AccountService(self.session, self.user_id).get(account_id)
        now = now or utcnow()
        expenses = sum_expenses(
            self.session,
            self.user_id,
            account.id,
            month_start(now.year, now.month),
            month_end(now.year, now.month),
        )
        return self.get(), expenses


class BudgetAlertService:
    @dataclass
    class BudgetAlert:
        budget: Budget
        user: User
        account: Account
        total_expenses: Decimal
        percentage_used: Decimal

    def __init__(self, session: Session, threshold: int = 80) -> None:
        self.session = session
        self.threshold = Decimal(threshold)

    def due_alerts(self, now: Optional[datetime] = None) -> list[BudgetAlert]:
        now = now or utcnow()
        rows = self.session.execute(
            select(Budget, User, Account)
            .join(User, Budget.user_id == User.id)
            .join(
                Account,
                (Account.user_id == User.id) & Account.is_default.is_(True),
            )
            .order_by(Budget.id)
        ).all()

        alerts: list[BudgetAlertService.BudgetAlert] = []
        for budget, user, account in rows:
            if budget.amount is None or budget.amount <= 0:
                continue
            total = sum_expenses(
                self.session,
                user.id,
                account.id,
                month_start(now.year, now.month),
                now,
            )
            percentage = total / to_money(budget.amount) * 100
            if percentage < self.threshold:
                continue
            if budget.last_alert_sent is not None and (
                budget.last_alert_sent.year,
                budget.last_alert_sent.month,
            ) >= (now.year, now.month):
                continue
            alerts.append(
                BudgetAlertService.BudgetAlert(
                    budget=budget,
                    user=user,
                    account=account,
                    total_expenses=total,
                    percentage_used=percentage,
                )
            )
        return alerts

    def mark_sent(self, budget: Budget, now: Optional[datetime] = None) -> None:
        with atomic(self.session):
            budget.last_alert_sent = now or utcnow()


@dataclass
class MonthlyStats:
    total_income: Decimal = Decimal("0.00")
    total_expenses: Decimal = Decimal("0.00")
    by_category: dict[str, Decimal] = field(default_factory=dict)
    transaction_count: int = 0

    @property
    def net(self) -> Decimal:
        return self.total_income - self.total_expenses


class ReportService:
    def __init__(self, session: Session) -> None:
        self.session = session

    def monthly_stats(self, user_id: int, year: int, month: int) -> MonthlyStats:
        transactions = self.session.scalars(
            select(Transaction).where(
                Transaction.user_id == user_id,
                Transaction.date.between(
                    month_start(year, month), month_end(year, month)
                ),
            )
        ).all()

        stats = MonthlyStats(transaction_count=len(transactions))
        for txn in transactions:
            amount = to_money(txn.amount)
            if txn.type == TransactionType.expense:
                stats.total_expenses += amount
                stats.by_category[txn.category] = (
                    stats.by_category.get(txn.category, Decimal("0.00")) + amount
                )
            else:
                stats.total_income += amount
        return stats
