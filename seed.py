import logging
import random
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Optional

from sqlalchemy import delete, update
from sqlalchemy.orm import Session

from database import atomic
from models import Account, Transaction, TransactionStatus, TransactionType
from periods import utcnow
from services import AccountService, signed_amount

logger = logging.getLogger(__name__)

SEED_CATEGORIES = {
    TransactionType.income: [
        ("salary", 5000, 8000),
        ("freelance", 1000, 3000),
        ("investments", 500, 2000),
        ("other-income", 100, 1000),
    ],
    TransactionType.expense: [
        ("housing", 1000, 2000),
        ("transportation", 100, 500),
        ("groceries", 200, 600),
        ("utilities", 100, 300),
        ("entertainment", 50, 200),
        ("food", 50, 150),
        ("shopping", 100, 500),
        ("healthcare", 100, 1000),
        ("education", 200, 1000),
        ("travel", 500, 2000),
    ],
}

INCOME_SHARE = 0.4


def _random_entry(
    rng: random.Random, txn_type: TransactionType
) -> tuple[str, Decimal]:
    category, low, high = rng.choice(SEED_CATEGORIES[txn_type])
    amount = Decimal(f"{rng.uniform(low, high):.2f}")
    return category, amount


def seed_transactions(
    session: Session,
    user_id: int,
    account_id: int,
    days: int = 90,
    rng: Optional[random.Random] = None,
    now: Optional[datetime] = None,
) -> int:
    """Replace an account's transactions with random demo history.

    Posts one to three transactions a day for the last ``days`` days, today
    included, and sets the balance to their signed sum.
    """
    account = AccountService(session, user_id).get(account_id)
    rng = rng or random.Random()
    now = now or utcnow()

    rows: list[Transaction] = []
    balance = Decimal("0.00")
    for offset in range(days, -1, -1):
        day = now - timedelta(days=offset)
        for _ in range(rng.randint(1, 3)):
            txn_type = (
                TransactionType.income
                if rng.random() < INCOME_SHARE
                else TransactionType.expense
            )
            category, amount = _random_entry(rng, txn_type)
            verb = "Received" if txn_type == TransactionType.income else "Paid for"
            rows.append(
                Transaction(
                    user_id=user_id,
                    account_id=account.id,
                    type=txn_type,
                    amount=amount,
                    description=f"{verb} {category}",
                    date=day,
                    category=category,
                    status=TransactionStatus.completed,
                    created_at=day,
                    updated_at=day,
                )
            )
            balance += signed_amount(txn_type, amount)

    with atomic(session):
        session.execute(
            delete(Transaction).where(Transaction.account_id == account.id)
        )
        session.add_all(rows)
        session.execute(
            update(Account).where(Account.id == account.id).values(balance=balance)
        )
    session.refresh(account)
    logger.info(
        f"seed_transactions: account_id={account.id} created={len(rows)} balance={balance}"
    )
    return len(rows)
