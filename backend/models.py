# models.py
import enum
from decimal import Decimal

from sqlalchemy import Boolean, Column, Date, DateTime, Enum, ForeignKey, Integer, Numeric, String, Text
from sqlalchemy.orm import relationship, validates
from sqlalchemy.sql import func
from database import Base

Money = Numeric(12, 2)


class TableStatus(str, enum.Enum):
    FREE = "free"
    OCCUPIED = "occupied"
    PAYMENT = "payment"


class PaymentMethod(str, enum.Enum):
    CASH = "cash"
    CARD = "card"
    CLICK = "click"
    # sale on credit: the amount is added to the customer's debt
    DEBT = "debt"


class CustomerType(str, enum.Enum):
    STANDARD = "standard"
    DISCOUNT = "discount"
    CASHBACK = "cashback"


class DebtEntryType(str, enum.Enum):
    DEBT = "debt"
    PAYMENT = "payment"


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    CASHIER = "cashier"
    WAITER = "waiter"


class PrinterType(str, enum.Enum):
    LAN = "lan"
    DRIVER = "driver"


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda members: [m.value for m in members], native_enum=False)


def _non_negative(name, value):
    if value is not None and Decimal(value) < 0:
        raise ValueError(f"{name} cannot be negative")
    return value


class User(Base):
    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    pin = Column(String(255), nullable=False)
    role = Column(_enum(UserRole), nullable=False, default=UserRole.WAITER)


class Setting(Base):
    __tablename__ = "settings"

    key = Column(String(64), primary_key=True)
    value = Column(Text, nullable=True)


class Hall(Base):
    __tablename__ = "halls"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)

    tables = relationship("DiningTable", back_populates="hall", cascade="all, delete-orphan")


class DiningTable(Base):
    __tablename__ = "tables"

    id = Column(Integer, primary_key=True, index=True)
    hall_id = Column(Integer, ForeignKey("halls.id", ondelete="CASCADE"), nullable=True, index=True)
    name = Column(String(50), nullable=False)
    status = Column(_enum(TableStatus), nullable=False, default=TableStatus.FREE, index=True)
    current_check_number = Column(Integer, nullable=False, default=0)
    total_amount = Column(Money, nullable=False, default=Decimal("0"))
    waiter_id = Column(Integer, nullable=True)
    waiter_name = Column(String(50), nullable=True)
    guests = Column(Integer, nullable=False, default=0)
    start_time = Column(DateTime(timezone=True), nullable=True)

    hall = relationship("Hall", back_populates="tables")
    items = relationship("OrderItem", back_populates="table", cascade="all, delete-orphan")

    @validates("total_amount")
    def validate_total_amount(self, key, value):
        return _non_negative(key, value)

    @validates("guests")
    def validate_guests(self, key, value):
        if value is not None and value < 0:
            raise ValueError("guests cannot be negative")
        return value

    @property
    def is_free(self):
        return self.status in (None, TableStatus.FREE)

    @property
    def has_known_waiter(self):
        return self.waiter_id is not None and bool(self.waiter_name)

    def reset_session(self):
        """Bring the table back to the free state in one step."""
        self.status = TableStatus.FREE
        self.current_check_number = 0
        self.total_amount = Decimal("0")
        self.waiter_id = None
        self.waiter_name = None
        self.guests = 0
        self.start_time = None


class Kitchen(Base):
    __tablename__ = "kitchens"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)
    printer_ip = Column(String(64), nullable=True)
    printer_port = Column(Integer, nullable=False, default=9100)
    printer_type = Column(_enum(PrinterType), nullable=False, default=PrinterType.DRIVER)


class Category(Base):
    __tablename__ = "categories"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(50), nullable=False)

    products = relationship("Product", back_populates="category", cascade="all, delete-orphan")


class Product(Base):
    __tablename__ = "products"

    id = Column(Integer, primary_key=True, index=True)
    category_id = Column(Integer, ForeignKey("categories.id"), nullable=True, index=True)
    name = Column(String(100), nullable=False, index=True)
    price = Column(Money, nullable=False)
    # station id as text, looked up by product name at order time
    destination = Column(String(32), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)

    category = relationship("Category", back_populates="products")

    @validates("price")
    def validate_price(self, key, value):
        return _non_negative(key, value)


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    table_id = Column(Integer, ForeignKey("tables.id", ondelete="CASCADE"), nullable=False, index=True)
    product_name = Column(String(100), nullable=False)
    price = Column(Money, nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    destination = Column(String(32), nullable=False)

    table = relationship("DiningTable", back_populates="items")

    @validates("price")
    def validate_price(self, key, value):
        return _non_negative(key, value)

    @validates("quantity")
    def validate_quantity(self, key, value):
        if value is None or value <= 0:
            raise ValueError("quantity must be positive")
        return value

    @property
    def line_total(self):
        return Decimal(self.price) * self.quantity


class Sale(Base):
    __tablename__ = "sales"

    id = Column(Integer, primary_key=True, index=True)
    check_number = Column(Integer, nullable=False, index=True)
    date = Column(DateTime(timezone=True), server_default=func.now(), index=True)
    subtotal = Column(Money, nullable=False)
    discount = Column(Money, nullable=False, default=Decimal("0"))
    service_charge = Column(Money, nullable=False, default=Decimal("0"))
    total_amount = Column(Money, nullable=False)
    payment_method = Column(_enum(PaymentMethod), nullable=False)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="SET NULL"), nullable=True, index=True)
    waiter_name = Column(String(50), nullable=True)
    guest_count = Column(Integer, nullable=False, default=0)
    items_json = Column(Text, nullable=False, default="[]")

    @validates("subtotal", "discount", "service_charge", "total_amount")
    def validate_money(self, key, value):
        return _non_negative(key, value)


class Customer(Base):
    __tablename__ = "customers"

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    phone = Column(String(20), nullable=True)
    type = Column(_enum(CustomerType), nullable=False, default=CustomerType.STANDARD)
    # percent: discount or cashback rate depending on type
    value = Column(Integer, nullable=False, default=0)
    balance = Column(Money, nullable=False, default=Decimal("0"))
    debt = Column(Money, nullable=False, default=Decimal("0"))
    birthday = Column(Date, nullable=True)
    notes = Column(Text, nullable=True)

    history = relationship("DebtHistory", back_populates="customer", cascade="all, delete-orphan")
    obligations = relationship("CustomerDebt", back_populates="customer", cascade="all, delete-orphan")

    @validates("balance", "debt")
    def validate_money(self, key, value):
        return _non_negative(key, value)


class DebtHistory(Base):
    __tablename__ = "debt_history"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    type = Column(_enum(DebtEntryType), nullable=False)
    date = Column(DateTime(timezone=True), server_default=func.now())
    comment = Column(Text, nullable=True)

    customer = relationship("Customer", back_populates="history")


class CustomerDebt(Base):
    __tablename__ = "customer_debts"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(Integer, ForeignKey("customers.id", ondelete="CASCADE"), nullable=False, index=True)
    amount = Column(Money, nullable=False)
    paid_amount = Column(Money, nullable=False, default=Decimal("0"))
    due_date = Column(Date, nullable=True)
    last_sms_date = Column(DateTime(timezone=True), nullable=True)
    is_paid = Column(Boolean, nullable=False, default=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    customer = relationship("Customer", back_populates="obligations")

    @property
    def outstanding(self):
        return Decimal(self.amount) - Decimal(self.paid_amount or 0)
