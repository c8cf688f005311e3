"""
reverify/authentication.py

Authentication (assertion) ceremony against an enrolled credential.

verify() applies, in order:
  1) consume the stored challenge          -> ChallengeExpired (no escalation)
  2) resolve the credential (subject + modality scoped)
  3) assertion checks + signature           -> VerificationFailed
  4) user-verified flag                     -> PinNotAllowed
  5) counter strictly greater than stored   -> ReplayDetected
  6) compare-and-set the stored counter     -> ReplayDetected on a lost race

Steps 2-6 are protocol rejections: each one opens a review case and writes a
PENDING_REVIEW ledger row before the error propagates, carrying the case id.

A passing assertion writes a SUCCESS ledger row and moves the subject's
next-due date CREDENTIAL_REVERIFY_MONTHS ahead.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List

from .audit import AuditLog
from .challenges import ChallengeKey, ChallengeStore, Purpose, new_challenge
from .config import Settings
from .errors import NoCredentials, NotFound, PinNotAllowed, ReplayDetected, StaleCounter, VerificationFailed
from .identity import CallerIdentity, known_subject
from .ledger import OutcomeRecorder, VerificationMethod
from .models import AuthenticationCredential
from .review import ReviewWorkflow
from .storage import CredentialRegistry, Modality, SubjectRepository, b64url
from .webauthn import credential_id_of, verify_assertion

log = logging.getLogger(__name__)

ESCALATING_ERRORS = (VerificationFailed, PinNotAllowed, ReplayDetected)


@dataclass
class AuthenticationOptions:
    challenge: bytes
    relying_party_id: str
    modality: Modality
    timeout_ms: int
    allowed_credentials: List[bytes] = field(default_factory=list)
    require_user_verification: bool = True

    def to_dict(self) -> Dict[str, Any]:
        challenge = b64url(self.challenge)
        ids = [b64url(c) for c in self.allowed_credentials]
        return {
            "challenge": challenge,
            "allowedCredentialIds": ids,
            "requireUserVerification": self.require_user_verification,
            "modality": self.modality.value,
            # PublicKeyCredentialRequestOptions (WebAuthn JSON) for navigator.credentials.get
            "publicKey": {
                "challenge": challenge,
                "rpId": self.relying_party_id,
                "allowCredentials": [{"type": "public-key", "id": i} for i in ids],
                "userVerification": "required",
                "timeout": self.timeout_ms,
            },
        }


@dataclass
class AuthenticationAccepted:
    subject_id: str
    modality: Modality
    credential_id: bytes
    sign_count: int
    next_due_at: datetime


class AuthenticationCeremony:
    def __init__(
        self,
        settings: Settings,
        challenges: ChallengeStore,
        subjects: SubjectRepository,
        credentials: CredentialRegistry,
        recorder: OutcomeRecorder,
        reviews: ReviewWorkflow,
        audit: AuditLog,
    ):
        self.settings = settings
        self.challenges = challenges
        self.subjects = subjects
        self.credentials = credentials
        self.recorder = recorder
        self.reviews = reviews
        self.audit = audit

    def issue_options(self, caller: CallerIdentity, modality: Modality) -> AuthenticationOptions:
        subject_id = known_subject(self.subjects, caller).subject_id
        allowed = self.credentials.lookup_allowed(subject_id, modality)
        if not allowed:
            raise NoCredentials(f"No {modality.value} credentials registered. Please register first.")

        challenge = new_challenge()
        key = ChallengeKey(subject_id, modality, Purpose.AUTHENTICATE)
        self.challenges.put(key, challenge, self.settings.CHALLENGE_TTL_SECONDS)
        log.info("issued authentication challenge subject=%s modality=%s", subject_id, modality.value)

        return AuthenticationOptions(
            challenge=challenge,
            relying_party_id=self.settings.RP_ID,
            modality=modality,
            timeout_ms=self.settings.CEREMONY_TIMEOUT_MS,
            allowed_credentials=allowed,
        )

    def verify(
        self,
        caller: CallerIdentity,
        modality: Modality,
        credential: AuthenticationCredential,
        **audit_ctx,
    ) -> AuthenticationAccepted:
        subject_id = caller.caller_id
        key = ChallengeKey(subject_id, modality, Purpose.AUTHENTICATE)
        expected = self.challenges.consume(key)

        try:
            stored = self._resolve(subject_id, modality, credential)
            result = verify_assertion(
                credential,
                expected_challenge=expected,
                origin=self.settings.ORIGIN,
                rp_id=self.settings.RP_ID,
                stored_public_key=stored.public_key,
            )
            audit_ctx.update(
                credential_id=stored.credential_id_b64,
                signature_bytes=result.signature,
                client_data_hash=result.client_data_hash,
            )

            if not result.user_verified:
                raise PinNotAllowed()

            if result.sign_count <= stored.sign_count:
                log.warning(
                    "SECURITY replay suspected subject=%s modality=%s stored=%d reported=%d",
                    subject_id,
                    modality.value,
                    stored.sign_count,
                    result.sign_count,
                )
                raise ReplayDetected(storedCounter=stored.sign_count, reportedCounter=result.sign_count)

            try:
                self.credentials.bump_counter(stored.credential_id, result.sign_count)
            except StaleCounter:
                log.warning("SECURITY concurrent assertion lost counter race subject=%s", subject_id)
                raise ReplayDetected(reportedCounter=result.sign_count)
        except ESCALATING_ERRORS as e:
            self._escalate(subject_id, modality, e, audit_ctx)
            raise

        self.audit.record(
            "approved",
            "assertion_valid",
            subject_id=subject_id,
            modality=modality.value,
            purpose=Purpose.AUTHENTICATE.value,
            sign_count=result.sign_count,
            **audit_ctx,
        )
        # The counter has already moved; a failure here is surfaced, not undone.
        next_due = self.recorder.success(
            subject_id,
            VerificationMethod.CREDENTIAL,
            self.settings.CREDENTIAL_REVERIFY_MONTHS,
            modality=modality,
        )
        return AuthenticationAccepted(
            subject_id=subject_id,
            modality=modality,
            credential_id=stored.credential_id,
            sign_count=result.sign_count,
            next_due_at=next_due,
        )

    def _resolve(self, subject_id: str, modality: Modality, credential: AuthenticationCredential):
        cred_id = credential_id_of(credential)
        try:
            stored = self.credentials.lookup_by_credential_id(cred_id)
        except NotFound:
            raise VerificationFailed("Credential not found for this account.", reason="unknown_credential")
        if stored.subject_id != subject_id or stored.modality != modality:
            raise VerificationFailed("Credential not allowed for this ceremony.", reason="credential_not_allowed")
        return stored

    def _escalate(self, subject_id: str, modality: Modality, err, audit_ctx: Dict[str, Any]) -> None:
        reason = err.extra.get("reason") or err.code.lower()
        log.warning(
            "authentication rejected subject=%s modality=%s code=%s reason=%s",
            subject_id,
            modality.value,
            err.code,
            reason,
        )
        self.audit.record(
            "denied",
            reason,
            subject_id=subject_id,
            modality=modality.value,
            purpose=Purpose.AUTHENTICATE.value,
            **audit_ctx,
        )
        case = self.reviews.escalate(
            subject_id,
            VerificationMethod.CREDENTIAL,
            reason=err.code,
            modality=modality,
        )
        err.extra.update(status="PENDING_REVIEW", reviewCaseId=case.case_id)
