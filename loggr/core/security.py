"""Password hashing, signed admin tokens and per-action nonces.

Nonces and admin tokens are both HS256 JWTs signed with SECRET_KEY. A nonce
carries the action name it was issued for and is only valid for that action.
"""
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional

import bcrypt
from jose import JWTError, jwt

from loggr.core.config import config

logger = logging.getLogger(__name__)

LOG_ERROR_NONCE_ACTION = "cel_log_error_nonce"
ADMIN_NONCE_ACTION = "cel_admin_nonce"

NONCE_SUBJECT = "nonce"
ADMIN_ROLE = "admin"


def get_password_hash(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain_password: str, hashed_password: str) -> bool:
    try:
        return bcrypt.checkpw(plain_password.encode("utf-8"), hashed_password.encode("utf-8"))
    except ValueError as e:
        # Malformed hash in configuration
        logger.error(f"Could not verify password against stored hash: {str(e)}")
        return False


def create_access_token(claims: Dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    """Sign claims with an expiry, TOKEN_EXPIRE minutes unless given."""
    lifetime = expires_delta if expires_delta is not None else timedelta(minutes=config.TOKEN_EXPIRE)
    payload = dict(claims, exp=datetime.now(timezone.utc) + lifetime)
    return jwt.encode(payload, config.SECRET_KEY, algorithm=config.TOKEN_ALGORITHM)


def decode_access_token(token: str) -> Optional[Dict[str, Any]]:
    """Claims of a valid, unexpired token, otherwise None."""
    try:
        return jwt.decode(token, config.SECRET_KEY, algorithms=[config.TOKEN_ALGORITHM])
    except JWTError as e:
        logger.debug(f"Rejected token: {str(e)}")
        return None


def create_admin_token(username: str, user_id: Optional[int] = None,
                       expires_delta: Optional[timedelta] = None) -> str:
    return create_access_token({"sub": username, "uid": user_id, "role": ADMIN_ROLE},
                               expires_delta=expires_delta)


def create_nonce(action: str = LOG_ERROR_NONCE_ACTION,
                 expires_hours: Optional[int] = None) -> str:
    hours = expires_hours if expires_hours is not None else config.NONCE_EXPIRE_HOURS
    return create_access_token({"sub": NONCE_SUBJECT, "action": action},
                               expires_delta=timedelta(hours=hours))


def verify_nonce(nonce: Optional[str], action: str = LOG_ERROR_NONCE_ACTION) -> bool:
    if not nonce:
        return False
    claims = decode_access_token(nonce)
    if claims is None:
        return False
    return claims.get("sub") == NONCE_SUBJECT and claims.get("action") == action
