"""
reverify/challenges.py

Ceremony challenge store.

A challenge is a single-use random value bound to one ceremony:

  key   = "{subject_id}_{modality}_{purpose}"   purpose ∈ {register, authenticate}
  value = raw random bytes
  ttl   = CHALLENGE_TTL_SECONDS (300)

The two ceremony phases are separate HTTP requests that may land on
different workers or nodes, so the store MUST be a shared service (Redis),
never process memory.

Only two operations exist:
  - put(key, value, ttl): overwrite any previous challenge for the key
  - consume(key):         atomic read-and-delete (Redis GETDEL)

consume() raises ChallengeExpired both for a key that never existed and for
one whose TTL elapsed; callers restart the ceremony in either case.
"""

from __future__ import annotations

import logging
import secrets
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum

import redis

from .errors import ChallengeExpired
from .storage import Modality

log = logging.getLogger(__name__)

CHALLENGE_BYTES = 32


class Purpose(str, Enum):
    REGISTER = "register"
    AUTHENTICATE = "authenticate"


@dataclass(frozen=True)
class ChallengeKey:
    subject_id: str
    modality: Modality
    purpose: Purpose

    def __str__(self) -> str:
        return f"{self.subject_id}_{self.modality.value}_{self.purpose.value}"


def new_challenge() -> bytes:
    return secrets.token_bytes(CHALLENGE_BYTES)


class ChallengeStore(ABC):
    @abstractmethod
    def put(self, key: ChallengeKey, value: bytes, ttl_seconds: int) -> None:
        ...

    @abstractmethod
    def consume(self, key: ChallengeKey) -> bytes:
        """Atomically read and delete; ChallengeExpired if absent."""

    @abstractmethod
    def ping(self) -> bool:
        ...


class RedisChallengeStore(ChallengeStore):
    def __init__(self, client: "redis.Redis", prefix: str = "reverify:challenge:"):
        self._redis = client
        self._prefix = prefix

    @classmethod
    def from_url(cls, url: str) -> "RedisChallengeStore":
        # raw bytes in, raw bytes out
        return cls(redis.Redis.from_url(url, decode_responses=False))

    def _name(self, key: ChallengeKey) -> str:
        return self._prefix + str(key)

    def put(self, key: ChallengeKey, value: bytes, ttl_seconds: int) -> None:
        if ttl_seconds <= 0:
            raise ValueError("ttl_seconds must be positive")
        self._redis.set(self._name(key), value, ex=ttl_seconds)
        log.debug("challenge stored key=%s ttl=%ss", key, ttl_seconds)

    def consume(self, key: ChallengeKey) -> bytes:
        value = self._redis.getdel(self._name(key))
        if value is None:
            log.info("challenge missing or expired key=%s", key)
            raise ChallengeExpired()
        return bytes(value)

    def ping(self) -> bool:
        try:
            return bool(self._redis.ping())
        except redis.RedisError as e:
            log.warning("challenge store unreachable: %s", e)
            return False
