"""
reverify/registration.py

Registration (enrollment) ceremony.

  NoChallenge --issue_options--> ChallengeIssued --verify--> Verified | Rejected | Expired

issue_options refuses early when the modality is already enrolled so no
ceremony is wasted; the authoritative uniqueness check is still the storage
constraint hit by CredentialRegistry.enroll (a concurrent enrollment that
won the race surfaces as AlreadyEnrolled).

The policy sent to the client requires a platform authenticator with user
verification; verify() rejects attestations without the UV flag.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List

from .audit import AuditLog
from .challenges import ChallengeKey, ChallengeStore, Purpose, new_challenge
from .config import Settings
from .errors import AlreadyEnrolled, VerificationFailed
from .identity import CallerIdentity, known_subject
from .models import RegistrationCredential
from .storage import Credential, CredentialRegistry, Modality, SubjectRepository, b64url
from .webauthn import verify_registration

log = logging.getLogger(__name__)


@dataclass
class RegistrationOptions:
    challenge: bytes
    relying_party_id: str
    relying_party_name: str
    subject_id: str
    display_name: str
    modality: Modality
    allowed_algorithms: List[int]
    timeout_ms: int
    require_user_verification: bool = True
    attachment: str = "platform"
    exclude_credentials: List[bytes] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        challenge = b64url(self.challenge)
        return {
            "challenge": challenge,
            "relyingPartyId": self.relying_party_id,
            "subjectId": self.subject_id,
            "displayName": self.display_name,
            "allowedAlgorithms": list(self.allowed_algorithms),
            "requireUserVerification": self.require_user_verification,
            "attachment": self.attachment,
            "modality": self.modality.value,
            # PublicKeyCredentialCreationOptions (WebAuthn JSON) for navigator.credentials.create
            "publicKey": {
                "rp": {"id": self.relying_party_id, "name": self.relying_party_name},
                "user": {
                    "id": b64url(self.subject_id.encode("utf-8")),
                    "name": self.subject_id,
                    "displayName": self.display_name,
                },
                "challenge": challenge,
                "pubKeyCredParams": [{"type": "public-key", "alg": a} for a in self.allowed_algorithms],
                "timeout": self.timeout_ms,
                "attestation": "none",
                "authenticatorSelection": {
                    "authenticatorAttachment": self.attachment,
                    "residentKey": "required",
                    "requireResidentKey": True,
                    "userVerification": "required",
                },
                "excludeCredentials": [
                    {"type": "public-key", "id": b64url(c)} for c in self.exclude_credentials
                ],
            },
        }


class RegistrationCeremony:
    def __init__(
        self,
        settings: Settings,
        challenges: ChallengeStore,
        subjects: SubjectRepository,
        credentials: CredentialRegistry,
        audit: AuditLog,
    ):
        self.settings = settings
        self.challenges = challenges
        self.subjects = subjects
        self.credentials = credentials
        self.audit = audit

    def issue_options(self, caller: CallerIdentity, modality: Modality) -> RegistrationOptions:
        subject = known_subject(self.subjects, caller)
        subject_id = subject.subject_id
        if self.credentials.is_enrolled(subject_id, modality):
            raise AlreadyEnrolled(f"{modality.value} already registered. Remove the existing passkey to register again.")

        challenge = new_challenge()
        key = ChallengeKey(subject_id, modality, Purpose.REGISTER)
        self.challenges.put(key, challenge, self.settings.CHALLENGE_TTL_SECONDS)
        log.info("issued registration challenge subject=%s modality=%s", subject_id, modality.value)

        return RegistrationOptions(
            challenge=challenge,
            relying_party_id=self.settings.RP_ID,
            relying_party_name=self.settings.RP_NAME,
            subject_id=subject_id,
            display_name=subject.display_name or caller.name or f"Subject {subject_id}",
            modality=modality,
            allowed_algorithms=list(self.settings.ALLOWED_ALGORITHMS),
            timeout_ms=self.settings.CEREMONY_TIMEOUT_MS,
            exclude_credentials=[c.credential_id for c in self.credentials.list_for_subject(subject_id)],
        )

    def verify(
        self,
        caller: CallerIdentity,
        modality: Modality,
        credential: RegistrationCredential,
        **audit_ctx,
    ) -> Credential:
        subject_id = caller.caller_id
        key = ChallengeKey(subject_id, modality, Purpose.REGISTER)
        # consumed before anything else: a failed attempt cannot be retried with it
        expected = self.challenges.consume(key)

        try:
            result = verify_registration(
                credential,
                expected_challenge=expected,
                origin=self.settings.ORIGIN,
                rp_id=self.settings.RP_ID,
                allowed_algorithms=self.settings.ALLOWED_ALGORITHMS,
            )
            if not result.user_verified:
                raise VerificationFailed(
                    "Registration was not user-verified; biometric verification is required.",
                    reason="user_not_verified",
                )
        except VerificationFailed as e:
            log.warning(
                "registration rejected subject=%s modality=%s reason=%s",
                subject_id,
                modality.value,
                e.extra.get("reason"),
            )
            self.audit.record(
                "denied",
                e.extra.get("reason", "verification_failed"),
                subject_id=subject_id,
                modality=modality.value,
                purpose=Purpose.REGISTER.value,
                **audit_ctx,
            )
            raise

        enrolled = self.credentials.enroll(
            subject_id,
            modality,
            credential_id=result.credential_id,
            public_key=result.public_key,
            counter=result.sign_count,
            transports=result.transports,
        )

        self.audit.record(
            "enrolled",
            "attestation_valid",
            subject_id=subject_id,
            modality=modality.value,
            purpose=Purpose.REGISTER.value,
            credential_id=enrolled.credential_id_b64,
            fmt=result.fmt,
            **audit_ctx,
        )
        log.info(
            "stored credential subject=%s modality=%s cred=%s…",
            subject_id,
            modality.value,
            enrolled.credential_id_b64[:10],
        )
        return enrolled
