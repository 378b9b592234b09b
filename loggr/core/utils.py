import string
import secrets
import time
from datetime import datetime, timezone


def create_random_key(length: int = 25) -> str:
    """Generate a random string of specified length."""
    characters = string.ascii_letters + string.digits
    return ''.join(secrets.choice(characters) for _ in range(length))


def utcnow() -> datetime:
    """Server clock as a naive UTC datetime, the form every timestamp column uses."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_base36(number: int) -> str:
    digits = string.digits + string.ascii_lowercase
    if number == 0:
        return "0"
    out = []
    while number:
        number, rem = divmod(number, 36)
        out.append(digits[rem])
    return ''.join(reversed(out))


def create_session_id() -> str:
    """Client session id: cel_<epoch ms>_<random base36>."""
    random_part = to_base36(secrets.randbits(32)) + to_base36(secrets.randbits(32))
    return f"cel_{int(time.time() * 1000)}_{random_part}"
