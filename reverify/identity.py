"""
reverify/identity.py

Caller identity resolution.

Every endpoint needs an already-authenticated caller; the login system that
authenticates people is external. Here we only:

  1) read "Authorization: Bearer <token>"
  2) verify the Ed25519 signature (tokens.py)
  3) enforce expiry and role

Roles:
  - subject: a beneficiary running their own ceremonies / face checks
  - officer: verification officer deciding review cases
  - admin:   allowed wherever an officer is
"""

import logging
import time
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable, Optional

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .errors import Forbidden, NotFound, Unauthorized
from .tokens import sign_token, verify_token

if TYPE_CHECKING:
    from .storage import Subject, SubjectRepository

log = logging.getLogger(__name__)

ROLE_SUBJECT = "subject"
ROLE_OFFICER = "officer"
ROLE_ADMIN = "admin"
OFFICER_ROLES = (ROLE_OFFICER, ROLE_ADMIN)


@dataclass(frozen=True)
class CallerIdentity:
    caller_id: str
    role: str
    name: str = ""


def issue_identity_token(
    sk: Ed25519PrivateKey,
    caller_id: str,
    role: str,
    name: str = "",
    ttl_seconds: int = 86_400,
    now: Optional[int] = None,
) -> str:
    iat = int(time.time()) if now is None else int(now)
    return sign_token(
        sk,
        {
            "sub": str(caller_id),
            "role": role,
            "name": name,
            "issued_at": iat,
            "expires_at": iat + int(ttl_seconds),
        },
    )


def resolve_caller(
    pk: Ed25519PublicKey,
    authorization: Optional[str],
    now: Callable[[], float] = time.time,
) -> CallerIdentity:
    if not authorization or not authorization.startswith("Bearer "):
        raise Unauthorized()

    token = authorization[len("Bearer "):].strip()
    try:
        claims = verify_token(pk, token)
    except (ValueError, InvalidSignature):
        log.info("rejected identity token: bad format or signature")
        raise Unauthorized()

    sub = str(claims.get("sub", "")).strip()
    role = str(claims.get("role", "")).strip().lower()
    try:
        exp = int(claims["expires_at"])
    except (KeyError, TypeError, ValueError):
        raise Unauthorized("identity token has no expiry")

    if not sub or role not in (ROLE_SUBJECT, ROLE_OFFICER, ROLE_ADMIN):
        raise Unauthorized()
    if now() >= exp:
        raise Unauthorized("identity token expired")

    return CallerIdentity(caller_id=sub, role=role, name=str(claims.get("name", "")))


def require_subject(caller: CallerIdentity) -> CallerIdentity:
    if caller.role != ROLE_SUBJECT:
        raise Forbidden("only subjects can run verification ceremonies")
    return caller


def require_officer(caller: CallerIdentity) -> CallerIdentity:
    if caller.role not in OFFICER_ROLES:
        raise Forbidden("verification officer role required")
    return caller


def known_subject(subjects: "SubjectRepository", caller: CallerIdentity) -> "Subject":
    """A signed token for a subject with no record is not a valid caller."""
    try:
        return subjects.get(caller.caller_id)
    except NotFound:
        log.warning("token for unknown subject=%s", caller.caller_id)
        raise Unauthorized("unknown subject")
