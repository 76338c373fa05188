from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, validator

from models import CustomerType, DebtEntryType, PaymentMethod, PrinterType, TableStatus, UserRole

MAX_AMOUNT = Decimal("1000000000")


def _money(v: Decimal, field: str, allow_zero: bool = True) -> Decimal:
    if v is None:
        raise ValueError(f"{field} is required")
    if v < 0 or (not allow_zero and v == 0):
        raise ValueError(f"{field} must be {'non-negative' if allow_zero else 'greater than 0'}")
    if v > MAX_AMOUNT:
        raise ValueError(f"{field} is too high")
    return v


def _name(v: str, field: str, max_length: int) -> str:
    if not v or len(v.strip()) == 0:
        raise ValueError(f"{field} cannot be empty")
    if len(v.strip()) > max_length:
        raise ValueError(f"{field} cannot exceed {max_length} characters")
    return v.strip()


class StaffCreate(BaseModel):
    name: str
    pin: str
    role: UserRole = UserRole.WAITER

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Name", 50)

    @validator("pin")
    def validate_pin(cls, v: str) -> str:
        if not v or not v.isdigit() or not 4 <= len(v) <= 6:
            raise ValueError("PIN must be 4 to 6 digits")
        return v


class StaffResponse(BaseModel):
    id: int
    name: str
    role: UserRole


class PinLogin(BaseModel):
    pin: str


class HallCreate(BaseModel):
    name: str

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Hall name", 50)


class HallResponse(BaseModel):
    id: int
    name: str


class TableCreate(BaseModel):
    hall_id: int
    name: str

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Table name", 50)


class TableResponse(BaseModel):
    id: int
    hall_id: Optional[int] = None
    name: str
    status: TableStatus
    current_check_number: int
    total_amount: Decimal
    waiter_id: Optional[int] = None
    waiter_name: Optional[str] = None
    guests: int
    start_time: Optional[datetime] = None


class KitchenCreate(BaseModel):
    name: str
    printer_ip: Optional[str] = None
    printer_port: int = 9100
    printer_type: PrinterType = PrinterType.DRIVER

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Station name", 50)

    @validator("printer_port")
    def validate_port(cls, v: int) -> int:
        if not 0 < v < 65536:
            raise ValueError("Printer port must be between 1 and 65535")
        return v


class KitchenResponse(BaseModel):
    id: int
    name: str
    printer_ip: Optional[str] = None
    printer_port: int
    printer_type: PrinterType


class CategoryCreate(BaseModel):
    name: str

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Category name", 50)


class CategoryResponse(BaseModel):
    id: int
    name: str


class ProductCreate(BaseModel):
    category_id: int
    name: str
    price: Decimal
    destination: Optional[str] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Product name", 100)

    @validator("price")
    def validate_price(cls, v: Decimal) -> Decimal:
        return _money(v, "Price", allow_zero=False)


class ProductResponse(BaseModel):
    id: int
    category_id: Optional[int] = None
    name: str
    price: Decimal
    destination: Optional[str] = None
    is_active: bool


class ProductStatusUpdate(BaseModel):
    is_active: bool


class CustomerCreate(BaseModel):
    name: str
    phone: Optional[str] = None
    type: CustomerType = CustomerType.STANDARD
    value: int = 0
    birthday: Optional[date] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Customer name", 100)

    @validator("phone")
    def validate_phone(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        digits = v.strip()
        if not digits.isdigit() or not 9 <= len(digits) <= 12:
            raise ValueError("Phone must be 9 to 12 digits")
        return digits

    @validator("value")
    def validate_value(cls, v: int) -> int:
        if not 0 <= v <= 100:
            raise ValueError("Value must be a percent between 0 and 100")
        return v


class CustomerResponse(BaseModel):
    id: int
    name: str
    phone: Optional[str] = None
    type: CustomerType
    value: int
    balance: Decimal
    debt: Decimal
    birthday: Optional[date] = None


class OrderItemCreate(BaseModel):
    name: str
    price: Decimal
    qty: int
    destination: Optional[str] = None

    @validator("name")
    def validate_name(cls, v: str) -> str:
        return _name(v, "Product name", 100)

    @validator("price")
    def validate_price(cls, v: Decimal) -> Decimal:
        return _money(v, "Price")

    @validator("qty")
    def validate_qty(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("Quantity must be greater than 0")
        if v > 1000:
            raise ValueError("Quantity cannot exceed 1000")
        return v


class BulkOrderCreate(BaseModel):
    table_id: int
    items: List[OrderItemCreate]
    waiter_id: Optional[int] = None

    @validator("items")
    def validate_items(cls, v: List[OrderItemCreate]) -> List[OrderItemCreate]:
        if not v:
            raise ValueError("At least one item is required")
        return v


class AcceptedItem(BaseModel):
    name: str
    price: Decimal
    qty: int
    destination: str


class OrderItemResponse(BaseModel):
    id: int
    table_id: int
    product_name: str
    price: Decimal
    quantity: int
    destination: str


class CheckNumberResponse(BaseModel):
    table_id: int
    check_number: int


class GuestsUpdate(BaseModel):
    count: int

    @validator("count")
    def validate_count(cls, v: int) -> int:
        if v < 1:
            raise ValueError("Guest count must be at least 1")
        if v > 1000:
            raise ValueError("Guest count is too high")
        return v


class TableStatusUpdate(BaseModel):
    status: TableStatus


class BillResponse(BaseModel):
    table_id: int
    table_name: str
    check_number: int
    waiter_name: Optional[str] = None
    guests: int
    items: List[OrderItemResponse]
    subtotal: Decimal
    service: Decimal
    total: Decimal


class CheckoutRequest(BaseModel):
    table_id: int
    total: Decimal
    subtotal: Decimal
    discount: Decimal = Decimal("0")
    payment_method: PaymentMethod
    customer_id: Optional[int] = None
    items: List[Dict[str, Any]] = []
    due_date: Optional[date] = None

    @validator("total")
    def validate_total(cls, v: Decimal) -> Decimal:
        return _money(v, "Total")

    @validator("subtotal")
    def validate_subtotal(cls, v: Decimal) -> Decimal:
        return _money(v, "Subtotal")

    @validator("discount")
    def validate_discount(cls, v: Decimal) -> Decimal:
        return _money(v, "Discount")


class CheckoutResponse(BaseModel):
    success: bool = True
    check_number: int


class DebtPayment(BaseModel):
    amount: Decimal
    comment: Optional[str] = None

    @validator("amount")
    def validate_amount(cls, v: Decimal) -> Decimal:
        return _money(v, "Amount", allow_zero=False)

    @validator("comment")
    def validate_comment(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and len(v) > 200:
            raise ValueError("Comment cannot exceed 200 characters")
        return v


class DebtPaymentResponse(BaseModel):
    customer_id: int
    debt: Decimal


class DebtorResponse(BaseModel):
    id: int
    name: str
    phone: Optional[str] = None
    debt: Decimal
    next_due_date: Optional[date] = None


class DebtHistoryResponse(BaseModel):
    id: int
    customer_id: int
    amount: Decimal
    type: DebtEntryType
    date: Optional[datetime] = None
    comment: Optional[str] = None


class SaleResponse(BaseModel):
    id: int
    check_number: int
    date: Optional[datetime] = None
    subtotal: Decimal
    discount: Decimal
    service_charge: Decimal
    total_amount: Decimal
    payment_method: PaymentMethod
    customer_id: Optional[int] = None
    waiter_name: Optional[str] = None
    guest_count: int
    items_json: str
