"""
Secure identifier generation for server-issued ids.

All randomness comes from the `secrets` module.
"""

import re
import secrets
import string
import time

WAITAG_PATTERN = re.compile(r"^(wai_[0-9a-zA-Z]+_[a-zA-Z0-9]+|[a-z]+-\d+-[a-f0-9]+)$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def generate_secure_id(length: int = 16) -> str:
    """Hex string of `length` random bytes"""
    return secrets.token_hex(length)


def _random_prefix(length: int = 8) -> str:
    return "".join(secrets.choice(string.ascii_lowercase) for _ in range(length))


def generate_waitag_id() -> str:
    """Server-issued WaiTag: <8 letters>-<ms timestamp>-<16 hex>"""
    return f"{_random_prefix(8)}-{_now_ms()}-{generate_secure_id(8)}"


def generate_session_id() -> str:
    return f"session-{_now_ms()}-{generate_secure_id(12)}"


def is_valid_waitag_id(waitag: str) -> bool:
    return bool(waitag) and WAITAG_PATTERN.match(waitag) is not None
