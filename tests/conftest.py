import hashlib
import json
import os
import struct
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fastapi.testclient import TestClient
from fido2 import cbor
from fido2.cose import ES256

from reverify.challenges import ChallengeStore
from reverify.config import Settings
from reverify.errors import ChallengeExpired, NoFaceDetected
from reverify.identity import CallerIdentity, issue_identity_token
from reverify.images import ImageStore
from reverify.main import create_app
from reverify.services import build_services
from reverify.similarity import SimilarityComparer
from reverify.storage import b64url
from reverify.tokens import generate_ed25519_key_b64, load_ed25519_private_key_from_b64

ORIGIN = "https://reverify.example"
RP_ID = "reverify.example"
SUBJECT_ID = "S1"
REFERENCE_REF = "s3://test-bucket/reference/S1.jpg"

FLAG_UP = 0x01
FLAG_UV = 0x04
FLAG_AT = 0x40


class MutableClock:
    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


class FakeChallengeStore(ChallengeStore):
    """In-memory store with TTL measured on the test clock."""

    def __init__(self, clock: MutableClock):
        self.clock = clock
        self.items = {}
        self.puts = []
        self.healthy = True

    def put(self, key, value, ttl_seconds):
        self.puts.append((str(key), ttl_seconds))
        self.items[str(key)] = (value, self.clock() + timedelta(seconds=ttl_seconds))

    def consume(self, key):
        item = self.items.pop(str(key), None)
        if item is None or self.clock() >= item[1]:
            raise ChallengeExpired()
        return item[0]

    def ping(self):
        return self.healthy


class FakeComparer(SimilarityComparer):
    def __init__(self, score=92.0):
        self.score = score
        self.calls = []

    def compare(self, reference, captured):
        self.calls.append((reference, captured))
        if self.score is None:
            raise NoFaceDetected()
        return self.score


class FakeImageStore(ImageStore):
    def __init__(self):
        self.objects = {}
        self.captured = []

    def get(self, ref):
        return self.objects[ref]

    def put_captured(self, subject_id, data, captured_at):
        ref = f"s3://test-bucket/captured/{subject_id}/{len(self.captured)}.jpg"
        self.objects[ref] = data
        self.captured.append(ref)
        return ref


class SoftAuthenticator:
    """
    Software platform authenticator producing real ES256 WebAuthn payloads
    ("none" attestation).
    """

    def __init__(self, rp_id=RP_ID, origin=ORIGIN, counter=0):
        self.rp_id = rp_id
        self.origin = origin
        self.key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(16)
        self.counter = counter

    def _auth_data(self, flags, counter, attested=b""):
        rp_hash = hashlib.sha256(self.rp_id.encode("utf-8")).digest()
        return rp_hash + bytes([flags]) + struct.pack(">I", counter) + attested

    def _client_data(self, type_, challenge, origin=None):
        return json.dumps(
            {"type": type_, "challenge": challenge, "origin": origin or self.origin, "crossOrigin": False}
        ).encode("utf-8")

    def register(self, challenge, uv=True, origin=None):
        cose_key = ES256.from_cryptography_key(self.key.public_key())
        attested = (
            b"\x00" * 16
            + struct.pack(">H", len(self.credential_id))
            + self.credential_id
            + cbor.encode(dict(cose_key))
        )
        flags = FLAG_UP | FLAG_AT | (FLAG_UV if uv else 0)
        auth_data = self._auth_data(flags, self.counter, attested)
        att_obj = cbor.encode({"fmt": "none", "attStmt": {}, "authData": auth_data})
        cid = b64url(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url(self._client_data("webauthn.create", challenge, origin)),
                "attestationObject": b64url(att_obj),
                "transports": ["internal"],
            },
        }

    def assertion(self, challenge, counter=None, uv=True, origin=None):
        if counter is None:
            self.counter += 1
            counter = self.counter
        auth_data = self._auth_data(FLAG_UP | (FLAG_UV if uv else 0), counter)
        client_data = self._client_data("webauthn.get", challenge, origin)
        signature = self.key.sign(auth_data + hashlib.sha256(client_data).digest(), ec.ECDSA(hashes.SHA256()))
        cid = b64url(self.credential_id)
        return {
            "id": cid,
            "rawId": cid,
            "type": "public-key",
            "response": {
                "clientDataJSON": b64url(client_data),
                "authenticatorData": b64url(auth_data),
                "signature": b64url(signature),
                "userHandle": None,
            },
        }


@pytest.fixture
def clock():
    return MutableClock(datetime(2026, 1, 31, 9, 0, tzinfo=timezone.utc))


@pytest.fixture
def challenge_store(clock):
    return FakeChallengeStore(clock)


@pytest.fixture
def comparer():
    return FakeComparer()


@pytest.fixture
def images():
    store = FakeImageStore()
    store.objects[REFERENCE_REF] = b"reference-jpeg"
    return store


@pytest.fixture
def settings(tmp_path):
    return Settings(
        ORIGIN=ORIGIN,
        RP_ID=RP_ID,
        DATABASE_URL="sqlite:///:memory:",
        AUDIT_DIR=str(tmp_path / "audit"),
        SERVER_ED25519_SK_B64=generate_ed25519_key_b64(),
    )


@pytest.fixture
def services(settings, challenge_store, comparer, images, clock):
    svc = build_services(
        settings,
        challenges=challenge_store,
        comparer=comparer,
        images=images,
        clock=clock,
    )
    svc.subjects.add(SUBJECT_ID, "Ada Subject", reference_image_ref=REFERENCE_REF)
    return svc


@pytest.fixture
def subject():
    return CallerIdentity(caller_id=SUBJECT_ID, role="subject", name="Ada Subject")


@pytest.fixture
def officer():
    return CallerIdentity(caller_id="O1", role="officer", name="Olu Officer")


@pytest.fixture
def authenticator():
    return SoftAuthenticator()


@pytest.fixture
def client(services):
    return TestClient(create_app(services))


def bearer(settings, caller_id, role, ttl_seconds=3600):
    sk = load_ed25519_private_key_from_b64(settings.SERVER_ED25519_SK_B64)
    return {"Authorization": "Bearer " + issue_identity_token(sk, caller_id, role, ttl_seconds=ttl_seconds)}


@pytest.fixture
def subject_headers(settings):
    return bearer(settings, SUBJECT_ID, "subject")


@pytest.fixture
def officer_headers(settings):
    return bearer(settings, "O1", "officer")
