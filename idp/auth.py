import logging
import secrets
from typing import Optional

from jose import JWTError, jwt
from passlib.context import CryptContext
from sqlalchemy.orm import Session

from config import ALGORITHM, SECRET_KEY
from .models import Account, LoginSession

logger = logging.getLogger(__name__)

pwd_context = CryptContext(schemes=["bcrypt"], deprecated="auto")

# 64 random bytes, 512 bits
TOKEN_BYTES = 64


def random_token() -> str:
    """Cryptographically strong, url safe random token."""
    return secrets.token_urlsafe(TOKEN_BYTES)


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(plain_password: str, hashed_password: str) -> bool:
    return pwd_context.verify(plain_password, hashed_password)


def create_account(db: Session, login: str, password: str, email: str = None,
                   is_disabled: bool = False) -> Account:
    account = Account(
        login=login,
        email=email,
        hashed_password=hash_password(password),
        is_disabled=is_disabled,
    )
    db.add(account)
    db.flush()
    return account


def get_active_account(db: Session, uuid: str) -> Optional[Account]:
    return (
        db.query(Account)
        .filter(Account.uuid == uuid, Account.is_disabled.is_(False))
        .first()
    )


def authenticate_account(db: Session, login: str, password: str) -> Optional[Account]:
    """Returns the account for valid credentials, None otherwise.

    Disabled accounts never authenticate.
    """
    account = (
        db.query(Account)
        .filter(Account.login == login, Account.is_disabled.is_(False))
        .first()
    )
    if not account or not verify_password(password, account.hashed_password):
        return None
    return account


def create_session_cookie(session: LoginSession, secret_key: str = SECRET_KEY) -> str:
    # Expiry is enforced on the stored session so it can slide.
    claims = {"sub": session.account_uuid, "sid": session.token}
    return jwt.encode(claims, secret_key, algorithm=ALGORITHM)


def read_session_cookie(cookie: Optional[str], secret_key: str = SECRET_KEY) -> Optional[str]:
    """Returns the session token of a well signed cookie, None otherwise."""
    if not cookie:
        return None
    try:
        payload = jwt.decode(cookie, secret_key, algorithms=[ALGORITHM])
    except JWTError:
        logger.warning("[SESSION] Rejected session cookie with bad signature")
        return None
    return payload.get("sid")
