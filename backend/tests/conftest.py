import os
import sys
import tempfile
from decimal import Decimal
from pathlib import Path

import pytest

BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

# must be set before database.py and redis_client.py are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///" + os.path.join(tempfile.gettempdir(), "pos_tests.db"))
os.environ["REDIS_HOST"] = ""
os.environ.setdefault("SECRET_KEY", "test-secret-key")

from sqlalchemy.orm import sessionmaker  # noqa: E402

import models  # noqa: E402
from database import Base, init_pos_config, make_engine  # noqa: E402
from notifications import ChangeBus  # noqa: E402
from orders import OrderService  # noqa: E402
from printing import PrintDispatcher  # noqa: E402
from settlement import CheckoutService  # noqa: E402


class FakePrinter:
    def __init__(self, target, fail=False):
        self.target = target
        self.fail = fail
        self.lines = []
        self.cut_count = 0
        self.closed = False

    def set(self, **kwargs):
        pass

    def text(self, value):
        if self.fail:
            raise OSError(f"printer {self.target} is offline")
        self.lines.append(value)

    def cut(self):
        self.cut_count += 1

    def close(self):
        self.closed = True

    @property
    def output(self):
        return "".join(self.lines)


class FakePrinterFactory:
    """Stands in for open_printer; records every printer it hands out."""

    def __init__(self):
        self.printers = []
        self.offline = set()

    def __call__(self, printer_ip, printer_port, printer_type):
        target = printer_ip or "driver"
        printer = FakePrinter(target, fail=target in self.offline)
        self.printers.append(printer)
        return printer

    def printed_to(self, target):
        return [p for p in self.printers if p.target == target and not p.fail]


@pytest.fixture
def engine(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'pos.db'}")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    factory = sessionmaker(autocommit=False, autoflush=False, bind=engine)
    init_pos_config(factory)
    return factory


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def events():
    return []


@pytest.fixture
def bus(events):
    bus = ChangeBus()
    bus.subscribe(events.append)
    return bus


@pytest.fixture
def printers():
    return FakePrinterFactory()


@pytest.fixture
def dispatcher(session_factory, bus, printers):
    dispatcher = PrintDispatcher(session_factory, bus, printer_factory=printers, max_workers=1)
    yield dispatcher
    dispatcher.shutdown(wait=True)


@pytest.fixture
def order_service(dispatcher, bus):
    return OrderService(dispatcher=dispatcher, bus=bus)


@pytest.fixture
def checkout_service(dispatcher, bus):
    return CheckoutService(dispatcher=dispatcher, bus=bus)


@pytest.fixture
def floor(db):
    """One hall with two free tables."""
    hall = models.Hall(name="Main")
    db.add(hall)
    db.flush()
    tables = [models.DiningTable(hall_id=hall.id, name=name) for name in ("T1", "T2")]
    db.add_all(tables)
    db.commit()
    return tables


@pytest.fixture
def staff(db):
    import auth

    waiters = {
        "anna": models.User(name="Anna", pin=auth.get_pin_hash("2222"), role=models.UserRole.WAITER),
        "boris": models.User(name="Boris", pin=auth.get_pin_hash("3333"), role=models.UserRole.WAITER),
        "cashier": models.User(name="Dina", pin=auth.get_pin_hash("4444"), role=models.UserRole.CASHIER),
    }
    db.add_all(waiters.values())
    db.commit()
    return waiters


@pytest.fixture
def kitchens(db):
    hot = models.Kitchen(name="Hot", printer_ip="10.0.0.11", printer_port=9100, printer_type=models.PrinterType.LAN)
    bar = models.Kitchen(name="Bar", printer_ip="10.0.0.12", printer_port=9100, printer_type=models.PrinterType.LAN)
    db.add_all([hot, bar])
    db.commit()
    return {"hot": hot, "bar": bar}


@pytest.fixture
def menu(db, kitchens):
    category = models.Category(name="Food")
    db.add(category)
    db.flush()
    products = {
        "Plov": models.Product(category_id=category.id, name="Plov", price=Decimal("1000"),
                               destination=str(kitchens["hot"].id)),
        "Salad": models.Product(category_id=category.id, name="Salad", price=Decimal("1500"),
                                destination=str(kitchens["hot"].id)),
        "Tea": models.Product(category_id=category.id, name="Tea", price=Decimal("100"),
                              destination=str(kitchens["bar"].id)),
    }
    db.add_all(products.values())
    db.commit()
    return products


def item(name, price, qty=1, destination=None):
    return {"name": name, "price": Decimal(str(price)), "qty": qty, "destination": destination}
