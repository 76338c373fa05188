from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

import debts
import models
from errors import InvalidInput, NotFound


@pytest.fixture
def debtor(db):
    customer = models.Customer(name="Karim", phone="998901112233", debt=Decimal("600"))
    db.add(customer)
    db.flush()
    db.add_all([
        models.CustomerDebt(customer_id=customer.id, amount=Decimal("100"), due_date=None,
                            created_at=datetime(2026, 9, 1)),
        models.CustomerDebt(customer_id=customer.id, amount=Decimal("200"), due_date=date(2026, 10, 20),
                            created_at=datetime(2026, 9, 2)),
        models.CustomerDebt(customer_id=customer.id, amount=Decimal("300"), due_date=date(2026, 10, 5),
                            created_at=datetime(2026, 9, 3)),
    ])
    db.commit()
    return customer


def obligations(db, customer):
    db.expire_all()
    return {
        o.amount: o for o in db.query(models.CustomerDebt).filter(models.CustomerDebt.customer_id == customer.id)
    }


def test_payment_settles_earliest_due_first(db, debtor):
    debts.pay_debt(db, debtor.id, Decimal("350"))

    rows = obligations(db, debtor)
    assert rows[Decimal("300")].is_paid
    assert not rows[Decimal("200")].is_paid
    assert rows[Decimal("200")].paid_amount == Decimal("50")
    assert rows[Decimal("100")].paid_amount == Decimal("0")


def test_obligations_without_due_date_are_settled_last(db, debtor):
    debts.pay_debt(db, debtor.id, Decimal("500"))

    rows = obligations(db, debtor)
    assert rows[Decimal("300")].is_paid
    assert rows[Decimal("200")].is_paid
    assert not rows[Decimal("100")].is_paid


def test_payment_cannot_exceed_the_debt(db, debtor):
    with pytest.raises(InvalidInput):
        debts.pay_debt(db, debtor.id, Decimal("600.01"))

    db.refresh(debtor)
    assert debtor.debt == Decimal("600")
    assert db.query(models.DebtHistory).count() == 0


@pytest.mark.parametrize("amount", [0, -5, "abc"])
def test_payment_amount_must_be_positive(db, debtor, amount):
    with pytest.raises(InvalidInput):
        debts.pay_debt(db, debtor.id, amount)


def test_payment_for_unknown_customer(db):
    with pytest.raises(NotFound):
        debts.pay_debt(db, 404, Decimal("10"))


def test_payment_notifies_the_bus(db, debtor, bus, events):
    debts.pay_debt(db, debtor.id, Decimal("100"), bus=bus)
    assert [e["type"] for e in events] == ["customers", "debtors"]


def test_debtors_list_shows_next_due_date(db, debtor):
    other = models.Customer(name="Clear")
    db.add(other)
    db.commit()

    rows = debts.get_debtors(db)
    assert len(rows) == 1
    assert rows[0]["name"] == "Karim"
    assert rows[0]["debt"] == Decimal("600")
    assert rows[0]["next_due_date"] == date(2026, 10, 5)


def test_history_of_unknown_customer(db):
    with pytest.raises(NotFound):
        debts.get_debt_history(db, 404)


def test_due_obligations_skip_recent_reminders(db, debtor):
    today = date(2026, 10, 21)
    due = debts.due_obligations(db, today=today)
    assert [o.amount for o in due] == [Decimal("300"), Decimal("200")]

    debts.mark_reminder_sent(db, due[0].id, when=datetime(2026, 10, 20, 12, 0))
    assert [o.amount for o in debts.due_obligations(db, today=today)] == [Decimal("200")]

    later = today + timedelta(days=3)
    assert [o.amount for o in debts.due_obligations(db, today=later)] == [Decimal("300"), Decimal("200")]
