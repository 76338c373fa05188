"""
Kitchen tickets, bills and receipts on ESC/POS printers.

Printing always happens after the business transaction has committed, on a
worker thread. A failed print is logged and announced as a ``printer-error``
event; it never touches the sale or the order that triggered it. Jobs live in
memory only: a crash before a job runs loses that print.
"""
import logging
import os
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, List, Optional

from models import Kitchen, PrinterType, Setting

logger = logging.getLogger("pos.printing")

PRINTER_DEVICE = os.getenv("PRINTER_DEVICE", "/dev/usb/lp0")
PRINT_WORKERS = int(os.getenv("PRINT_WORKERS", "2"))
PRINT_TIMEOUT = int(os.getenv("PRINT_TIMEOUT", "10"))
LINE_WIDTH = 32

PAYMENT_LABELS = {
    "cash": "Cash",
    "card": "Card",
    "click": "Click",
    "debt": "On credit",
}


def open_printer(printer_ip: Optional[str], printer_port: Optional[int], printer_type: Optional[str]):
    """Open a python-escpos printer for a station or the cash desk."""
    from escpos.printer import File, Network

    if printer_type == PrinterType.LAN.value and printer_ip:
        return Network(printer_ip, port=int(printer_port or 9100), timeout=PRINT_TIMEOUT)
    return File(PRINTER_DEVICE)


def format_money(value) -> str:
    amount = Decimal(str(value or 0)).quantize(Decimal("0.01"))
    if amount == amount.to_integral_value():
        return f"{int(amount):,}".replace(",", " ")
    return f"{amount:,.2f}".replace(",", " ")


def format_row(left: str, right: str, width: int = LINE_WIDTH) -> str:
    space = max(1, width - len(left) - len(right))
    return left + (" " * space) + right


def _rule(width: int = LINE_WIDTH) -> str:
    return "-" * width


def _item_quantity(item: Dict[str, Any]) -> int:
    return int(item.get("quantity") or item.get("qty") or 0)


def _item_name(item: Dict[str, Any]) -> str:
    return str(item.get("product_name") or item.get("name") or "")


def kitchen_ticket_lines(items: Iterable[Dict[str, Any]], table_name: str, check_number: int,
                         waiter_name: str, station_name: str = "", printed_at: Optional[datetime] = None) -> List[str]:
    printed_at = printed_at or datetime.now()
    lines = []
    if station_name:
        lines.append(station_name.upper())
    lines.append(format_row(f"Table: {table_name}", f"#{check_number}"))
    lines.append(format_row(f"Waiter: {waiter_name}", printed_at.strftime("%H:%M")))
    lines.append(_rule())
    for item in items:
        lines.append(format_row(_item_name(item), f"x{_item_quantity(item)}"))
    lines.append(_rule())
    return lines


def bill_lines(bill: Dict[str, Any], title: str = "BILL") -> List[str]:
    lines = [
        title,
        format_row(f"Table: {bill.get('table_name', '')}", f"#{bill.get('check_number', 0)}"),
        f"Waiter: {bill.get('waiter_name') or ''}",
        _rule(),
    ]
    for item in bill.get("items", []):
        qty = _item_quantity(item)
        line_total = Decimal(str(item.get("price") or 0)) * qty
        lines.append(_item_name(item))
        lines.append(format_row(f"  {qty} x {format_money(item.get('price'))}", format_money(line_total)))
    lines.append(_rule())
    lines.append(format_row("Subtotal", format_money(bill.get("subtotal"))))
    if Decimal(str(bill.get("discount") or 0)) > 0:
        lines.append(format_row("Discount", f"-{format_money(bill.get('discount'))}"))
    if Decimal(str(bill.get("service") or 0)) > 0:
        lines.append(format_row("Service", format_money(bill.get("service"))))
    lines.append(format_row("TOTAL", format_money(bill.get("total"))))
    method = bill.get("payment_method")
    if method:
        lines.append(format_row("Payment", PAYMENT_LABELS.get(method, str(method))))
    return lines


def write_lines(printer, lines: List[str]):
    try:
        printer.set(align="left", bold=False)
        for line in lines:
            printer.text(line + "\n")
        printer.cut()
    finally:
        printer.close()


class PrintDispatcher:
    """Runs print jobs on a small thread pool after the data they print is committed."""

    def __init__(self, session_factory, bus, printer_factory: Callable = open_printer,
                 max_workers: int = PRINT_WORKERS):
        self.session_factory = session_factory
        self.bus = bus
        self.printer_factory = printer_factory
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="print")

    def submit(self, description: str, job: Callable, *args) -> Future:
        return self._executor.submit(self._run, description, job, *args)

    def _run(self, description: str, job: Callable, *args):
        try:
            job(*args)
            return True
        except Exception as e:
            logger.exception(f"{description} failed")
            self.bus.notify("printer-error", f"{description}: {e}")
            return False

    def shutdown(self, wait: bool = True):
        self._executor.shutdown(wait=wait)

    # ========== Jobs ==========

    def print_kitchen_ticket(self, items: List[Dict[str, Any]], table_name: str, check_number: int,
                             waiter_name: str) -> Future:
        return self.submit("Kitchen printer", self._kitchen_ticket_job,
                           list(items), table_name, check_number, waiter_name)

    def print_bill(self, bill: Dict[str, Any]) -> Future:
        return self.submit("Bill printer", self._receipt_job, dict(bill), "BILL")

    def print_receipt(self, receipt: Dict[str, Any]) -> Future:
        return self.submit("Cash desk printer", self._receipt_job, dict(receipt), "RECEIPT")

    def _kitchen_ticket_job(self, items, table_name, check_number, waiter_name):
        groups: "OrderedDict[str, List[Dict[str, Any]]]" = OrderedDict()
        for item in items:
            groups.setdefault(str(item.get("destination")), []).append(item)

        logger.info(f"Kitchen ticket: {len(items)} item(s), check #{check_number}, {len(groups)} station(s)")

        failures = []
        for destination, group in groups.items():
            try:
                station = self._load_station(destination)
                lines = kitchen_ticket_lines(group, table_name, check_number, waiter_name,
                                             station["name"] if station else "")
                if station:
                    printer = self.printer_factory(station["printer_ip"], station["printer_port"],
                                                   station["printer_type"])
                else:
                    logger.warning(f"Station {destination} not configured, printing on the cash desk printer")
                    printer = self._receipt_printer()
                write_lines(printer, lines)
            except Exception as e:
                logger.exception(f"Ticket for station {destination} failed")
                failures.append(f"{destination}: {e}")

        if failures:
            raise RuntimeError("; ".join(failures))

    def _receipt_job(self, receipt, title):
        lines = bill_lines(receipt, title=title)
        write_lines(self._receipt_printer(), lines)
        logger.info(f"{title.capitalize()} printed for check #{receipt.get('check_number')}")

    # ========== Printer lookup ==========

    def _load_station(self, destination: str) -> Optional[Dict[str, Any]]:
        if not destination or not destination.isdigit():
            return None
        db = self.session_factory()
        try:
            kitchen = db.query(Kitchen).filter(Kitchen.id == int(destination)).first()
            if not kitchen:
                return None
            return {
                "name": kitchen.name,
                "printer_ip": kitchen.printer_ip,
                "printer_port": kitchen.printer_port,
                "printer_type": kitchen.printer_type.value if kitchen.printer_type else None,
            }
        finally:
            db.close()

    def _receipt_printer(self):
        db = self.session_factory()
        try:
            rows = db.query(Setting).filter(
                Setting.key.in_(["receipt_printer_ip", "receipt_printer_port"])
            ).all()
            settings = {row.key: row.value for row in rows}
        finally:
            db.close()
        ip = settings.get("receipt_printer_ip") or None
        port = settings.get("receipt_printer_port") or 9100
        return self.printer_factory(ip, port, PrinterType.LAN.value if ip else PrinterType.DRIVER.value)
