"""
reverify/webauthn.py

WebAuthn response verification (attestation at enrollment, assertion at
authentication).

Checks, in the order they are applied:

  1) clientDataJSON.type is "webauthn.create" / "webauthn.get"
  2) clientDataJSON.challenge equals the consumed server challenge
  3) clientDataJSON.origin equals ORIGIN
  4) authenticatorData.rpIdHash equals SHA-256(RP_ID)
  5) user presence flag is set
  6) signature:
       - registration: attestation statement for its fmt (fido2.attestation)
       - authentication: stored COSE key over authenticatorData || SHA-256(clientDataJSON)

Any failure raises VerificationFailed. Policy decisions that come after a
valid signature (user verification, counter monotonicity) belong to the
ceremony handlers, which is why the results below only report them.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass, field
from typing import List, Sequence

from cryptography.exceptions import InvalidSignature as CryptoInvalidSignature
from fido2 import cbor
from fido2.attestation import Attestation, InvalidData, InvalidSignature, UnsupportedType
from fido2.cose import CoseKey
from fido2.utils import websafe_decode
from fido2.webauthn import AttestationObject, AuthenticatorData, CollectedClientData

from .errors import VerificationFailed
from .models import AuthenticationCredential, RegistrationCredential

log = logging.getLogger(__name__)

TYPE_CREATE = "webauthn.create"
TYPE_GET = "webauthn.get"


@dataclass
class RegistrationResult:
    credential_id: bytes
    public_key: bytes  # CBOR-encoded COSE key
    sign_count: int
    user_verified: bool
    fmt: str
    transports: List[str] = field(default_factory=list)


@dataclass
class AssertionResult:
    credential_id: bytes
    sign_count: int
    user_verified: bool
    signature: bytes
    client_data_hash: bytes


def decode_field(value: str, name: str) -> bytes:
    try:
        return websafe_decode(value)
    except Exception:
        raise VerificationFailed(f"invalid base64url in {name}", reason="bad_encoding")


def rp_id_hash(rp_id: str) -> bytes:
    return hashlib.sha256(rp_id.encode("utf-8")).digest()


def _client_data(raw: bytes) -> CollectedClientData:
    try:
        return CollectedClientData(raw)
    except Exception:
        raise VerificationFailed("malformed clientDataJSON", reason="bad_client_data")


def _check_client_data(
    client_data: CollectedClientData,
    expected_type: str,
    expected_challenge: bytes,
    expected_origin: str,
) -> None:
    if client_data.type != expected_type:
        raise VerificationFailed("unexpected ceremony type", reason="type_mismatch")
    if not hmac.compare_digest(bytes(client_data.challenge), expected_challenge):
        raise VerificationFailed("challenge mismatch", reason="challenge_mismatch")
    if str(client_data.origin).rstrip("/") != expected_origin.rstrip("/"):
        raise VerificationFailed("origin mismatch", reason="origin_mismatch")


def _check_authenticator_data(auth_data: AuthenticatorData, rp_id: str) -> None:
    if not hmac.compare_digest(bytes(auth_data.rp_id_hash), rp_id_hash(rp_id)):
        raise VerificationFailed("RP binding failed (rp_id_hash mismatch)", reason="rp_id_hash_mismatch")
    if not auth_data.is_user_present():
        raise VerificationFailed("user presence flag not set", reason="user_not_present")


def verify_registration(
    credential: RegistrationCredential,
    expected_challenge: bytes,
    origin: str,
    rp_id: str,
    allowed_algorithms: Sequence[int],
) -> RegistrationResult:
    if credential.type != "public-key":
        raise VerificationFailed("unsupported credential type", reason="bad_credential_type")

    raw_client_data = decode_field(credential.response.client_data_json, "clientDataJSON")
    client_data = _client_data(raw_client_data)
    _check_client_data(client_data, TYPE_CREATE, expected_challenge, origin)

    try:
        att_obj = AttestationObject(decode_field(credential.response.attestation_object, "attestationObject"))
    except VerificationFailed:
        raise
    except Exception:
        raise VerificationFailed("malformed attestationObject", reason="bad_attestation_object")

    auth_data = att_obj.auth_data
    _check_authenticator_data(auth_data, rp_id)

    cred_data = auth_data.credential_data
    if cred_data is None:
        raise VerificationFailed("attested credential data missing", reason="no_credential_data")

    raw_id = decode_field(credential.raw_id, "rawId")
    if not hmac.compare_digest(bytes(cred_data.credential_id), raw_id):
        raise VerificationFailed("credential id mismatch", reason="credential_id_mismatch")

    public_key = cred_data.public_key
    alg = public_key.get(3)
    if alg not in allowed_algorithms:
        raise VerificationFailed("credential algorithm not allowed", reason="alg_not_allowed", alg=alg)

    try:
        Attestation.for_type(att_obj.fmt)().verify(att_obj.att_stmt, auth_data, client_data.hash)
    except (InvalidData, InvalidSignature, UnsupportedType, CryptoInvalidSignature, ValueError) as e:
        log.warning("attestation statement rejected fmt=%s: %s", att_obj.fmt, e)
        raise VerificationFailed("attestation statement invalid", reason="bad_attestation", fmt=att_obj.fmt)

    return RegistrationResult(
        credential_id=bytes(cred_data.credential_id),
        public_key=cbor.encode(dict(public_key)),
        sign_count=int(auth_data.counter),
        user_verified=auth_data.is_user_verified(),
        fmt=att_obj.fmt,
        transports=list(credential.response.transports),
    )


def credential_id_of(credential: AuthenticationCredential) -> bytes:
    raw_id = decode_field(credential.raw_id, "rawId")
    if not hmac.compare_digest(decode_field(credential.id, "id"), raw_id):
        raise VerificationFailed("credential id mismatch", reason="credential_id_mismatch")
    return raw_id


def verify_assertion(
    credential: AuthenticationCredential,
    expected_challenge: bytes,
    origin: str,
    rp_id: str,
    stored_public_key: bytes,
) -> AssertionResult:
    if credential.type != "public-key":
        raise VerificationFailed("unsupported credential type", reason="bad_credential_type")

    raw_client_data = decode_field(credential.response.client_data_json, "clientDataJSON")
    client_data = _client_data(raw_client_data)
    _check_client_data(client_data, TYPE_GET, expected_challenge, origin)

    raw_auth_data = decode_field(credential.response.authenticator_data, "authenticatorData")
    try:
        auth_data = AuthenticatorData(raw_auth_data)
    except Exception:
        raise VerificationFailed("malformed authenticatorData", reason="bad_authenticator_data")
    _check_authenticator_data(auth_data, rp_id)

    signature = decode_field(credential.response.signature, "signature")
    try:
        key = CoseKey.parse(cbor.decode(stored_public_key))
        key.verify(raw_auth_data + client_data.hash, signature)
    except (CryptoInvalidSignature, ValueError, KeyError, NotImplementedError) as e:
        log.warning("assertion signature rejected: %s", type(e).__name__)
        raise VerificationFailed("Signature verification failed.", reason="invalid_signature")

    return AssertionResult(
        credential_id=credential_id_of(credential),
        sign_count=int(auth_data.counter),
        user_verified=auth_data.is_user_verified(),
        signature=signature,
        client_data_hash=client_data.hash,
    )
