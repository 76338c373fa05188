"""
Order entry for dining tables.

A table's dining session gets one check number, keeps accumulating items and
a running total, and is attributed to the waiter who opened it. Every
operation here is one database transaction: row locks on the table and on the
check number counter are the only concurrency control. Printing and change
notifications run after commit.
"""
import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import pos_settings
from database import NEXT_CHECK_NUMBER_KEY
from errors import InvalidInput, NotFound
from models import DiningTable, Kitchen, OrderItem, Product, Setting, TableStatus, User

logger = logging.getLogger("pos.orders")

# used when no station is configured at all
DEFAULT_DESTINATION = "1"

# printed on tickets when nobody is attributed to the table
UNKNOWN_WAITER_LABEL = "Cashier"

PERCENT = "percent"


def get_table_for_update(db: Session, table_id: int) -> DiningTable:
    table = db.query(DiningTable).filter(DiningTable.id == table_id).with_for_update().first()
    if not table:
        raise NotFound(f"Table {table_id} not found")
    return table


def service_charge(subtotal: Decimal, guests: int, charge_type: Optional[str], value: Decimal) -> Decimal:
    if value <= 0:
        return Decimal("0")
    if charge_type == PERCENT:
        return subtotal * value / Decimal(100)
    return Decimal(guests or 0) * value


def _item_fields(item: Any):
    data = item if isinstance(item, dict) else item.model_dump()
    name = data.get("name") or data.get("product_name")
    if not name or not str(name).strip():
        raise InvalidInput("Item name is required")
    try:
        price = Decimal(str(data.get("price")))
        qty = int(data.get("qty") or data.get("quantity") or 0)
    except (InvalidOperation, TypeError, ValueError):
        raise InvalidInput(f"Invalid price or quantity for {name}")
    if price < 0 or qty <= 0:
        raise InvalidInput(f"Invalid price or quantity for {name}")
    return str(name).strip(), price, qty, data.get("destination")


class CheckNumberAllocator:
    """Hands out check numbers from the persisted counter, one per dining session."""

    def __init__(self, key: str = NEXT_CHECK_NUMBER_KEY):
        self.key = key

    def allocate(self, db: Session, table: DiningTable) -> int:
        """
        Return the table's check number, assigning the next one if it has none.

        Runs inside the caller's transaction and never commits. The counter
        row is locked so concurrent sessions cannot get the same number.
        """
        if table.current_check_number and table.current_check_number > 0:
            return table.current_check_number

        counter = db.query(Setting).filter(Setting.key == self.key).with_for_update().first()
        next_number = int(counter.value) if counter is not None and counter.value else 1
        if counter is None:
            counter = Setting(key=self.key)
            db.add(counter)

        counter.value = str(next_number + 1)
        table.current_check_number = next_number
        db.flush()
        logger.info(f"Check #{next_number} assigned to table {table.id}")
        return next_number


class DestinationResolver:
    """Maps an ordered product to the station that prepares it. Never raises."""

    def __init__(self, sentinel: str = DEFAULT_DESTINATION):
        self.sentinel = sentinel

    def resolve(self, db: Session, product_name: str, suggested: Optional[str] = None) -> str:
        db.flush()
        try:
            with db.begin_nested():
                destination = self._catalog_destination(db, product_name)
        except SQLAlchemyError:
            logger.exception(f"Destination lookup failed for '{product_name}', using the default station")
            return self.default_destination(db)

        if destination:
            if suggested is not None and str(suggested) != destination:
                logger.warning(f"Destination corrected for '{product_name}': {suggested} -> {destination}")
            return destination

        logger.warning(f"'{product_name}' not in catalog or has no station, using the default station")
        return self.default_destination(db)

    def _catalog_destination(self, db: Session, product_name: str) -> Optional[str]:
        product = (
            db.query(Product)
            .filter(Product.name == product_name)
            .order_by(Product.id)
            .first()
        )
        if product and product.destination:
            return str(product.destination)
        return None

    def default_destination(self, db: Session) -> str:
        """The first configured station, or the sentinel when there is none."""
        try:
            with db.begin_nested():
                kitchen = db.query(Kitchen.id).order_by(Kitchen.id.asc()).first()
        except SQLAlchemyError:
            logger.exception("Default station lookup failed")
            return self.sentinel
        return str(kitchen.id) if kitchen else self.sentinel


class OrderService:
    def __init__(self, dispatcher=None, bus=None, allocator: Optional[CheckNumberAllocator] = None,
                 resolver: Optional[DestinationResolver] = None):
        self.dispatcher = dispatcher
        self.bus = bus
        self.allocator = allocator or CheckNumberAllocator()
        self.resolver = resolver or DestinationResolver()

    def _notify(self, kind: str, ident: Any = None):
        if self.bus is not None:
            self.bus.notify(kind, ident)

    def allocate_check_number(self, db: Session, table_id: int) -> int:
        try:
            table = get_table_for_update(db, table_id)
            if table.is_free:
                raise InvalidInput("Table has no open session")
            number = self.allocator.allocate(db, table)
            db.commit()
        except Exception:
            db.rollback()
            raise
        self._notify("tables")
        return number

    def add_items(self, db: Session, table_id: int, items: List[Any],
                  waiter_id: Optional[int] = None) -> List[Dict[str, Any]]:
        """
        Append a batch of items to the table's open order.

        All items are stored or none are. The acting waiter takes the table
        over only when it is free or nobody known is attributed to it;
        otherwise the current attribution stays and only the total grows.
        """
        if not items:
            raise InvalidInput("No items to add")
        parsed = [_item_fields(item) for item in items]

        try:
            waiter_name = self._waiter_name(db, waiter_id)
            table = get_table_for_update(db, table_id)
            check_number = self.allocator.allocate(db, table)

            addition = Decimal("0")
            accepted = []
            for name, price, qty, suggested in parsed:
                destination = self.resolver.resolve(db, name, suggested)
                db.add(OrderItem(
                    table_id=table.id,
                    product_name=name,
                    price=price,
                    quantity=qty,
                    destination=destination,
                ))
                addition += price * qty
                accepted.append({
                    "name": name,
                    "product_name": name,
                    "price": price,
                    "qty": qty,
                    "quantity": qty,
                    "destination": destination,
                })

            table.total_amount = Decimal(table.total_amount or 0) + addition

            if table.is_free or not table.has_known_waiter:
                table.waiter_id = waiter_id if waiter_name else None
                table.waiter_name = waiter_name

            table.status = TableStatus.OCCUPIED
            if table.start_time is None:
                table.start_time = datetime.now()

            table_name = table.name
            print_name = waiter_name or table.waiter_name or UNKNOWN_WAITER_LABEL
            db.commit()
        except Exception:
            db.rollback()
            logger.exception(f"Adding items to table {table_id} failed")
            raise

        self._notify("tables")
        self._notify("table-items", table_id)

        if self.dispatcher is not None:
            logger.info(f"Ticket queued: {len(accepted)} item(s), check #{check_number}")
            self.dispatcher.print_kitchen_ticket(accepted, table_name, check_number, print_name)

        return accepted

    def _waiter_name(self, db: Session, waiter_id: Optional[int]) -> Optional[str]:
        if not waiter_id:
            return None
        user = db.query(User).filter(User.id == waiter_id).first()
        if not user or not user.name:
            logger.warning(f"Unknown waiter id {waiter_id}, table attribution left open")
            return None
        return user.name

    def get_table_items(self, db: Session, table_id: int) -> List[OrderItem]:
        if not db.query(DiningTable.id).filter(DiningTable.id == table_id).first():
            raise NotFound(f"Table {table_id} not found")
        return db.query(OrderItem).filter(OrderItem.table_id == table_id).order_by(OrderItem.id).all()

    def set_guests(self, db: Session, table_id: int, count: int) -> DiningTable:
        if count is None or count < 1:
            raise InvalidInput("Guest count must be at least 1")
        try:
            table = get_table_for_update(db, table_id)
            table.guests = count
            if table.is_free:
                table.status = TableStatus.OCCUPIED
            if table.start_time is None:
                table.start_time = datetime.now()
            db.commit()
        except Exception:
            db.rollback()
            raise
        self._notify("tables")
        return table

    def update_status(self, db: Session, table_id: int, status: TableStatus) -> DiningTable:
        status = TableStatus(status)
        if status == TableStatus.FREE:
            return self.close_table(db, table_id)
        try:
            table = get_table_for_update(db, table_id)
            table.status = status
            db.commit()
        except Exception:
            db.rollback()
            raise
        self._notify("tables")
        return table

    def close_table(self, db: Session, table_id: int) -> DiningTable:
        """Cancel the session: drop its items and free the table."""
        try:
            table = get_table_for_update(db, table_id)
            db.query(OrderItem).filter(OrderItem.table_id == table_id).delete(synchronize_session=False)
            table.reset_session()
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(f"Table {table_id} closed")
        self._notify("tables")
        self._notify("table-items", table_id)
        return table

    def compute_bill(self, db: Session, table: DiningTable) -> Dict[str, Any]:
        items = db.query(OrderItem).filter(OrderItem.table_id == table.id).order_by(OrderItem.id).all()
        subtotal = sum((item.line_total for item in items), Decimal("0"))
        charge_type = pos_settings.get_setting(db, "serviceChargeType", PERCENT)
        charge_value = pos_settings.get_decimal(db, "serviceChargeValue")
        service = service_charge(subtotal, table.guests, charge_type, charge_value)
        return {
            "table_id": table.id,
            "table_name": table.name,
            "check_number": table.current_check_number,
            "waiter_name": table.waiter_name,
            "guests": table.guests,
            "items": [
                {
                    "id": item.id,
                    "table_id": item.table_id,
                    "product_name": item.product_name,
                    "price": item.price,
                    "quantity": item.quantity,
                    "destination": item.destination,
                }
                for item in items
            ],
            "subtotal": subtotal,
            "service": service,
            "total": subtotal + service,
        }

    def get_bill(self, db: Session, table_id: int) -> Dict[str, Any]:
        table = db.query(DiningTable).filter(DiningTable.id == table_id).first()
        if not table:
            raise NotFound(f"Table {table_id} not found")
        return self.compute_bill(db, table)

    def request_bill(self, db: Session, table_id: int) -> Dict[str, Any]:
        """Print the bill for the guests and mark the table as awaiting payment."""
        try:
            table = get_table_for_update(db, table_id)
            has_items = db.query(OrderItem.id).filter(OrderItem.table_id == table_id).first()
            if not has_items:
                raise InvalidInput("There are no orders on this table")
            self.allocator.allocate(db, table)
            bill = self.compute_bill(db, table)
            table.status = TableStatus.PAYMENT
            db.commit()
        except Exception:
            db.rollback()
            raise

        logger.info(f"Bill requested: table {table_id}, check #{bill['check_number']}")
        self._notify("tables")
        if self.dispatcher is not None:
            self.dispatcher.print_bill(dict(bill, waiter_name=bill["waiter_name"] or UNKNOWN_WAITER_LABEL))
        return bill
