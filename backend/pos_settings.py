"""Key/value business settings stored in the ``settings`` table."""
import logging
from decimal import Decimal, InvalidOperation
from typing import Dict, Optional

from sqlalchemy.orm import Session

from database import NEXT_CHECK_NUMBER_KEY
from errors import InvalidInput
from models import Setting

logger = logging.getLogger("pos.settings")

# owned by the check number allocator
READ_ONLY_KEYS = {NEXT_CHECK_NUMBER_KEY}

SERVICE_CHARGE_TYPES = {"percent", "per_guest"}


def get_settings(db: Session) -> Dict[str, Optional[str]]:
    return {row.key: row.value for row in db.query(Setting).all()}


def get_setting(db: Session, key: str, default: Optional[str] = None) -> Optional[str]:
    row = db.query(Setting).filter(Setting.key == key).first()
    if row is None or row.value is None:
        return default
    return row.value


def get_decimal(db: Session, key: str, default: str = "0") -> Decimal:
    raw = get_setting(db, key, default)
    try:
        return Decimal(str(raw).strip() or default)
    except InvalidOperation:
        logger.warning(f"Setting {key} is not a number: {raw!r}, using {default}")
        return Decimal(default)


def save_settings(db: Session, values: Dict[str, object]) -> Dict[str, Optional[str]]:
    for key in values:
        if key in READ_ONLY_KEYS:
            raise InvalidInput(f"Setting {key} cannot be changed")
    charge_type = values.get("serviceChargeType")
    if charge_type is not None and charge_type not in SERVICE_CHARGE_TYPES:
        raise InvalidInput("serviceChargeType must be 'percent' or 'per_guest'")

    try:
        for key, value in values.items():
            if not key or value is None:
                continue
            row = db.query(Setting).filter(Setting.key == key).first()
            if row is None:
                db.add(Setting(key=key, value=str(value)))
            else:
                row.value = str(value)
        db.commit()
    except Exception:
        db.rollback()
        raise

    logger.info("Settings saved")
    return get_settings(db)
