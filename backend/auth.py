from passlib.context import CryptContext
import jwt
import logging
import re
from datetime import datetime, timedelta, timezone
from sqlalchemy.orm import Session
import secrets
import os

from errors import AppError

logger = logging.getLogger("pos.auth")

# PINs are 4-6 digits, salted per user
pin_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")

PIN_PATTERN = re.compile(r"^\d{4,6}$")


def get_secret_key():
    env_key = os.getenv("SECRET_KEY")
    if env_key:
        return env_key

    key_file = ".secret_key"
    if os.path.exists(key_file):
        try:
            with open(key_file, "r", encoding='utf-8') as f:
                return f.read().strip()
        except UnicodeDecodeError:
            logger.warning("Unreadable secret key file, generating a new one")
            os.remove(key_file)

    new_key = secrets.token_urlsafe(32)
    with open(key_file, "w", encoding='utf-8') as f:
        f.write(new_key)
    if os.name != 'nt':
        os.chmod(key_file, 0o600)
    logger.info("Generated a new SECRET_KEY")
    return new_key


SECRET_KEY = get_secret_key()
ALGORITHM = "HS256"
ACCESS_TOKEN_EXPIRE_MINUTES = int(os.getenv("ACCESS_TOKEN_EXPIRE_MINUTES", str(24 * 60)))


def validate_pin(pin):
    if not pin or not PIN_PATTERN.match(str(pin)):
        raise AppError("INVALID_PIN", "PIN must be 4 to 6 digits")
    return str(pin)


def verify_pin(plain_pin, hashed_pin):
    return pin_context.verify(plain_pin, hashed_pin)


def get_pin_hash(pin):
    return pin_context.hash(validate_pin(pin))


def find_user_by_pin(db: Session, pin: str):
    """Hashes are salted, so every user has to be checked."""
    from models import User
    for user in db.query(User).order_by(User.id).all():
        if verify_pin(pin, user.pin):
            return user
    return None


def authenticate_user(db: Session, pin: str):
    validate_pin(pin)
    user = find_user_by_pin(db, pin)
    if not user:
        logger.warning("Login attempt with a wrong PIN")
        raise AppError("INVALID_PIN")
    logger.info(f"Login: {user.name} ({user.role.value})")
    return user


def create_access_token(data: dict):
    to_encode = data.copy()
    expire = datetime.now(timezone.utc) + timedelta(minutes=ACCESS_TOKEN_EXPIRE_MINUTES)
    to_encode.update({"exp": expire})
    return jwt.encode(to_encode, SECRET_KEY, algorithm=ALGORITHM)


def verify_token(token: str):
    try:
        return jwt.decode(token, SECRET_KEY, algorithms=[ALGORITHM])
    except jwt.ExpiredSignatureError:
        return None
    except jwt.InvalidTokenError:
        return None
