"""
Three-tier identity persistence.

Tiers mirror what a page has available: a cookie mirror, durable local
storage and session-scoped storage. Each tier is read and written
independently, so a disabled or partitioned tier never loses the identity
held by the others.
"""

import base64
import binascii
import json
import logging
import os
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, List, Optional

import httpx

from .schema import Identity

logger = logging.getLogger(__name__)

COOKIE_KEY = "nylo_wai"
LOCAL_KEY = "nylo_cross_domain_identity"
SESSION_KEY = "nylo_session_identity"
COOKIE_MAX_AGE = 86400


def to_base36(value: int) -> str:
    digits = "0123456789abcdefghijklmnopqrstuvwxyz"
    if value == 0:
        return "0"
    out = []
    while value:
        value, rem = divmod(value, 36)
        out.append(digits[rem])
    return "".join(reversed(out))


class StorageBackend(ABC):
    """Key/value store for one tier"""

    @abstractmethod
    def get(self, key: str) -> Optional[str]:
        ...

    @abstractmethod
    def set(self, key: str, value: str):
        ...

    @abstractmethod
    def delete(self, key: str):
        ...


class MemoryBackend(StorageBackend):
    """Session-scoped storage: lives as long as the tracker"""

    def __init__(self):
        self._values: Dict[str, str] = {}

    def get(self, key: str) -> Optional[str]:
        return self._values.get(key)

    def set(self, key: str, value: str):
        self._values[key] = value

    def delete(self, key: str):
        self._values.pop(key, None)


class FileBackend(StorageBackend):
    """Durable local storage in a JSON file"""

    def __init__(self, path: str):
        self.path = path

    def _read(self) -> Dict[str, str]:
        if not os.path.exists(self.path):
            return {}
        with open(self.path, "r", encoding="utf-8") as f:
            data = json.load(f)
        return data if isinstance(data, dict) else {}

    def _write(self, data: Dict[str, str]):
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp_path = f"{self.path}.tmp"
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp_path, self.path)

    def get(self, key: str) -> Optional[str]:
        return self._read().get(key)

    def set(self, key: str, value: str):
        data = self._read()
        data[key] = value
        self._write(data)

    def delete(self, key: str):
        data = self._read()
        if key in data:
            del data[key]
            self._write(data)


class CookieBackend(StorageBackend):
    """
    Cookie mirror backed by an httpx cookie jar.

    Sharing the jar with the API client's AsyncClient sends the cookie along
    with tracking requests. Entries expire after `max_age` seconds.
    """

    def __init__(
        self,
        jar: Optional[httpx.Cookies] = None,
        domain: str = "",
        path: str = "/",
        max_age: int = COOKIE_MAX_AGE,
        clock: Callable[[], float] = time.time
    ):
        self.jar = jar if jar is not None else httpx.Cookies()
        self.domain = domain
        self.path = path
        self.max_age = max_age
        self._clock = clock
        self._expires: Dict[str, float] = {}

    def get(self, key: str) -> Optional[str]:
        expires_at = self._expires.get(key)
        if expires_at is not None and self._clock() >= expires_at:
            self.delete(key)
            return None
        return self.jar.get(key, domain=self.domain, path=self.path)

    def set(self, key: str, value: str):
        self.jar.set(key, value, domain=self.domain, path=self.path)
        self._expires[key] = self._clock() + self.max_age

    def delete(self, key: str):
        self._expires.pop(key, None)
        if self.jar.get(key, domain=self.domain, path=self.path) is not None:
            self.jar.delete(key, domain=self.domain, path=self.path)


# Tier encodings

def encode_cookie(identity: Identity) -> str:
    return base64.b64encode(json.dumps(identity.to_dict()).encode("utf-8")).decode("ascii")


def decode_cookie(value: str) -> Optional[Identity]:
    return Identity.from_dict(json.loads(base64.b64decode(value).decode("utf-8")))


def encode_local(identity: Identity, customer_id: str, now_ms: Optional[int] = None) -> str:
    """
    `base64(json + salt) + "." + ts36` with `salt = customer_id + ts36`.

    This is obfuscation, not encryption: anyone holding the customer id can
    reverse it.
    """
    stamp = to_base36(now_ms if now_ms is not None else int(time.time() * 1000))
    salted = json.dumps(identity.to_dict()) + customer_id + stamp
    return base64.b64encode(salted.encode("utf-8")).decode("ascii") + "." + stamp


def decode_local(value: str, customer_id: str) -> Optional[Identity]:
    parts = value.split(".")
    if len(parts) != 2:
        return None
    encoded, stamp = parts
    salt = customer_id + stamp
    decoded = base64.b64decode(encoded).decode("utf-8")
    if not decoded.endswith(salt):
        return None
    return Identity.from_dict(json.loads(decoded[:len(decoded) - len(salt)]))


def encode_session(identity: Identity) -> str:
    return json.dumps(identity.to_dict())


def decode_session(value: str) -> Optional[Identity]:
    return Identity.from_dict(json.loads(value))


class StorageTier:
    """One backend plus the key and encoding used in it"""

    def __init__(
        self,
        name: str,
        backend: StorageBackend,
        key: str,
        encode: Callable[[Identity], str],
        decode: Callable[[str], Optional[Identity]]
    ):
        self.name = name
        self.backend = backend
        self.key = key
        self.encode = encode
        self.decode = decode


class IdentityStore:
    """
    Ordered identity tiers: cookie, durable local, session.

    Reads return the first tier holding a well-formed identity. Writes go to
    every tier; a failing tier is logged and skipped.
    """

    def __init__(
        self,
        customer_id: str = "1",
        cookie: Optional[StorageBackend] = None,
        local: Optional[StorageBackend] = None,
        session: Optional[StorageBackend] = None
    ):
        self.customer_id = customer_id
        self.tiers: List[StorageTier] = [
            StorageTier("cookie", cookie or CookieBackend(), COOKIE_KEY, encode_cookie, decode_cookie),
            StorageTier(
                "local",
                local or MemoryBackend(),
                LOCAL_KEY,
                lambda identity: encode_local(identity, self.customer_id),
                lambda value: decode_local(value, self.customer_id)
            ),
            StorageTier("session", session or MemoryBackend(), SESSION_KEY, encode_session, decode_session),
        ]

    def save(self, identity: Identity) -> List[str]:
        """Returns the names of the tiers that accepted the write"""
        written = []
        for tier in self.tiers:
            try:
                tier.backend.set(tier.key, tier.encode(identity))
                written.append(tier.name)
            except Exception as e:
                logger.debug(f"{tier.name} storage write failed: {e}")
                continue
        return written

    def load(self) -> Optional[Identity]:
        for tier in self.tiers:
            try:
                raw = tier.backend.get(tier.key)
                if not raw:
                    continue
                identity = tier.decode(raw)
            except (binascii.Error, UnicodeDecodeError, ValueError) as e:
                logger.debug(f"{tier.name} storage holds an unreadable identity: {e}")
                continue
            except Exception as e:
                logger.debug(f"{tier.name} storage read failed: {e}")
                continue
            if identity is not None:
                return identity
        return None

    def clear(self):
        for tier in self.tiers:
            try:
                tier.backend.delete(tier.key)
            except Exception as e:
                logger.debug(f"{tier.name} storage clear failed: {e}")
                continue
