"""
Checkout: turns a table's open session into an immutable sale.

The sale record, the customer ledger changes and the table reset are one
transaction. The receipt is printed afterwards; a printer failure cannot undo
a sale that has been committed.
"""
import json
import logging
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, Optional

from sqlalchemy.orm import Session

from errors import InvalidInput, NotFound
from models import (
    Customer,
    CustomerDebt,
    CustomerType,
    DebtEntryType,
    DebtHistory,
    OrderItem,
    PaymentMethod,
    Sale,
)
from orders import UNKNOWN_WAITER_LABEL, get_table_for_update
from schemas import CheckoutRequest

logger = logging.getLogger("pos.settlement")


def cashback_amount(customer: Customer, total: Decimal) -> Decimal:
    """Balance credited to the customer for a sale of ``total``."""
    program = CustomerType(customer.type)
    if program == CustomerType.CASHBACK:
        if customer.value and customer.value > 0:
            return total * Decimal(customer.value) / Decimal(100)
        return Decimal("0")
    elif program == CustomerType.DISCOUNT:
        # the discount is already part of the total the cashier sends
        return Decimal("0")
    elif program == CustomerType.STANDARD:
        return Decimal("0")
    raise InvalidInput(f"Unsupported customer program: {program}")


def _items_snapshot(items) -> str:
    return json.dumps(items or [], default=str, ensure_ascii=False)


class CheckoutService:
    def __init__(self, dispatcher=None, bus=None):
        self.dispatcher = dispatcher
        self.bus = bus

    def _notify(self, kind: str, ident: Any = None):
        if self.bus is not None:
            self.bus.notify(kind, ident)

    def checkout(self, db: Session, request: CheckoutRequest) -> Dict[str, Any]:
        method = PaymentMethod(request.payment_method)
        if method == PaymentMethod.DEBT and not request.customer_id:
            raise InvalidInput("A customer is required for a sale on credit")

        now = datetime.now()
        try:
            table = get_table_for_update(db, request.table_id)
            if table.is_free:
                raise InvalidInput(f"Table {request.table_id} has no open order")

            customer: Optional[Customer] = None
            if request.customer_id:
                customer = (
                    db.query(Customer)
                    .filter(Customer.id == request.customer_id)
                    .with_for_update()
                    .first()
                )
                if not customer:
                    raise NotFound(f"Customer {request.customer_id} not found")

            check_number = table.current_check_number or 0
            waiter_name = table.waiter_name or UNKNOWN_WAITER_LABEL
            guest_count = table.guests or 0
            table_name = table.name

            total = Decimal(request.total)
            subtotal = Decimal(request.subtotal)
            discount = Decimal(request.discount or 0)
            service = max(total - (subtotal - discount), Decimal("0"))

            db.add(Sale(
                check_number=check_number,
                date=now,
                subtotal=subtotal,
                discount=discount,
                service_charge=service,
                total_amount=total,
                payment_method=method,
                customer_id=customer.id if customer else None,
                waiter_name=waiter_name,
                guest_count=guest_count,
                items_json=_items_snapshot(request.items),
            ))

            if method == PaymentMethod.DEBT:
                customer.debt = Decimal(customer.debt or 0) + total
                db.add(DebtHistory(
                    customer_id=customer.id,
                    amount=total,
                    type=DebtEntryType.DEBT,
                    date=now,
                    comment=f"Sale #{check_number} ({waiter_name})",
                ))
                db.add(CustomerDebt(
                    customer_id=customer.id,
                    amount=total,
                    paid_amount=Decimal("0"),
                    due_date=request.due_date,
                    is_paid=False,
                    created_at=now,
                ))

            if customer is not None:
                accrued = cashback_amount(customer, total)
                if accrued > 0:
                    customer.balance = Decimal(customer.balance or 0) + accrued

            db.query(OrderItem).filter(OrderItem.table_id == table.id).delete(synchronize_session=False)
            table.reset_session()
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Checkout of table {request.table_id} failed")
            raise

        logger.info(f"Sale #{check_number}: table {request.table_id}, {total} by {method.value}")

        self._notify("tables")
        self._notify("table-items", request.table_id)
        self._notify("sales")
        if request.customer_id:
            self._notify("customers")
            if method == PaymentMethod.DEBT:
                self._notify("debtors")

        if self.dispatcher is not None:
            self.dispatcher.print_receipt({
                "check_number": check_number,
                "table_name": table_name,
                "waiter_name": waiter_name,
                "items": request.items,
                "subtotal": subtotal,
                "discount": discount,
                "service": service,
                "total": total,
                "payment_method": method.value,
            })

        return {"success": True, "check_number": check_number}
