"""
Customer debt ledger.

``Customer.debt`` is the running balance; ``CustomerDebt`` rows are the
individual sales on credit with their due dates, used for reminders. A payment
lowers the balance and settles the open obligations oldest first, so the two
stay in step.
"""
import logging
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import func, nulls_last
from sqlalchemy.orm import Session

from errors import InvalidInput, NotFound
from models import Customer, CustomerDebt, DebtEntryType, DebtHistory

logger = logging.getLogger("pos.debts")


def _open_obligations(db: Session, customer_id: int) -> List[CustomerDebt]:
    return (
        db.query(CustomerDebt)
        .filter(CustomerDebt.customer_id == customer_id, CustomerDebt.is_paid.is_(False))
        .order_by(nulls_last(CustomerDebt.due_date.asc()), CustomerDebt.created_at.asc(), CustomerDebt.id.asc())
        .all()
    )


def settle_obligations(db: Session, customer_id: int, amount: Decimal) -> Decimal:
    """Apply a payment to unpaid obligations, oldest due first. Returns what was left over."""
    remaining = Decimal(amount)
    for obligation in _open_obligations(db, customer_id):
        if remaining <= 0:
            break
        applied = min(remaining, obligation.outstanding)
        obligation.paid_amount = Decimal(obligation.paid_amount or 0) + applied
        remaining -= applied
        if obligation.outstanding <= 0:
            obligation.is_paid = True
    return remaining


def pay_debt(db: Session, customer_id: int, amount, comment: Optional[str] = None, bus=None) -> Decimal:
    try:
        amount = Decimal(str(amount))
    except Exception:
        raise InvalidInput("Invalid amount")
    if amount <= 0:
        raise InvalidInput("Amount must be greater than 0")

    try:
        customer = db.query(Customer).filter(Customer.id == customer_id).with_for_update().first()
        if not customer:
            raise NotFound(f"Customer {customer_id} not found")

        current = Decimal(customer.debt or 0)
        if amount > current:
            raise InvalidInput(f"Amount {amount} exceeds the current debt {current}")

        customer.debt = current - amount
        db.add(DebtHistory(
            customer_id=customer.id,
            amount=amount,
            type=DebtEntryType.PAYMENT,
            date=datetime.now(),
            comment=comment,
        ))
        settle_obligations(db, customer.id, amount)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info(f"Debt payment: customer {customer_id}, {amount}, left {customer.debt}")
    if bus is not None:
        bus.notify("customers")
        bus.notify("debtors")
    return Decimal(customer.debt)


def get_debtors(db: Session) -> List[dict]:
    next_due = (
        db.query(CustomerDebt.customer_id, func.min(CustomerDebt.due_date).label("next_due_date"))
        .filter(CustomerDebt.is_paid.is_(False))
        .group_by(CustomerDebt.customer_id)
        .subquery()
    )
    rows = (
        db.query(Customer, next_due.c.next_due_date)
        .outerjoin(next_due, next_due.c.customer_id == Customer.id)
        .filter(Customer.debt > 0)
        .order_by(Customer.id)
        .all()
    )
    return [
        {
            "id": customer.id,
            "name": customer.name,
            "phone": customer.phone,
            "debt": customer.debt,
            "next_due_date": next_due_date,
        }
        for customer, next_due_date in rows
    ]


def get_debt_history(db: Session, customer_id: int) -> List[DebtHistory]:
    if not db.query(Customer.id).filter(Customer.id == customer_id).first():
        raise NotFound(f"Customer {customer_id} not found")
    return (
        db.query(DebtHistory)
        .filter(DebtHistory.customer_id == customer_id)
        .order_by(DebtHistory.id.desc())
        .all()
    )


def due_obligations(db: Session, today: Optional[date] = None, resend_after_days: int = 3) -> List[CustomerDebt]:
    """Unpaid obligations that are due and have no recent reminder."""
    today = today or date.today()
    resend_before = datetime.combine(today - timedelta(days=resend_after_days), datetime.max.time())
    candidates = (
        db.query(CustomerDebt)
        .filter(
            CustomerDebt.is_paid.is_(False),
            CustomerDebt.due_date.isnot(None),
            CustomerDebt.due_date <= today,
        )
        .order_by(CustomerDebt.due_date.asc(), CustomerDebt.id.asc())
        .all()
    )
    return [
        obligation for obligation in candidates
        if obligation.last_sms_date is None or obligation.last_sms_date.replace(tzinfo=None) <= resend_before
    ]


def mark_reminder_sent(db: Session, obligation_id: int, when: Optional[datetime] = None) -> CustomerDebt:
    try:
        obligation = db.query(CustomerDebt).filter(CustomerDebt.id == obligation_id).first()
        if not obligation:
            raise NotFound(f"Debt {obligation_id} not found")
        obligation.last_sms_date = when or datetime.now()
        db.commit()
    except Exception:
        db.rollback()
        raise
    return obligation
