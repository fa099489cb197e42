"""
HMAC tokens for admin requests and local staging upload URLs.

Tokens have the form ``<hexdigest>:<timestamp>``.
"""

import hmac
import logging
import time
from typing import Optional

logger = logging.getLogger(__name__)


class TokenException(Exception):
    """Raised when an auth token is invalid for some reason."""
    pass


def get_timestamp() -> int:
    """Return an integer timestamp with one second resolution for
    the current moment.
    """
    return int(time.time())


def generate_token(timestamp, value: str, key: str) -> str:
    """Generate the auth token for the given value and timestamp."""
    timestamp = str(timestamp)
    mac = hmac.new(key.encode(), timestamp.encode() + value.encode(), digestmod='sha256')
    return ':'.join((mac.hexdigest(), timestamp))


def _split_token(token_in: str):
    if not token_in:
        raise TokenException("Auth token is missing.")
    if ':' not in token_in:
        raise TokenException("Auth token is malformed.")
    mac_in, timestr = token_in.split(':', 1)
    try:
        timestamp = int(timestr)
    except ValueError:
        raise TokenException("Auth token is malformed.")
    return mac_in, timestamp


def validate_token(token_in: str, value: str, key: Optional[str], time_tolerance: Optional[int] = None) -> None:
    """Validate the input token for the given value. Checks that the token
    is within the time tolerance and is valid. Validation is skipped when
    no key is configured.
    """
    if key is None:
        return
    mac_in, timestamp = _split_token(token_in)

    if time_tolerance is not None:
        current_time = get_timestamp()
        if not abs(current_time - timestamp) < time_tolerance:
            raise TokenException(f"Auth token timestamp out of range: {timestamp} vs {current_time}")

    if not hmac.compare_digest(token_in, generate_token(timestamp, value, key)):
        raise TokenException("Auth token is invalid.")
    logger.debug(f"Valid token for {value}")


def sign_upload(object_key: str, expires_at: int, key: str) -> str:
    """Token for a staging upload URL; the timestamp is the expiry."""
    return generate_token(expires_at, f"PUT:{object_key}", key)


def verify_upload(token_in: str, object_key: str, key: str) -> None:
    """Check an upload token's signature and that it has not expired."""
    mac_in, expires_at = _split_token(token_in)
    if not hmac.compare_digest(token_in, sign_upload(object_key, expires_at, key)):
        raise TokenException("Upload token is invalid.")
    if get_timestamp() > expires_at:
        raise TokenException("Upload token has expired.")
