# reverify/services.py
#
# Wiring: one Services container per process, built from Settings.
#
# Nothing in the core reaches for module globals; every handler receives its
# collaborators here, so tests swap in fakes (challenge store, comparer,
# image store, clock) without patching.
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from .audit import AuditLog
from .authentication import AuthenticationCeremony
from .challenges import ChallengeStore, RedisChallengeStore
from .config import Settings
from .db import init_db, make_engine, make_session_factory, utcnow
from .images import ImageStore, S3ImageStore
from .ledger import OutcomeRecorder, VerificationLedger
from .registration import RegistrationCeremony
from .review import ReviewWorkflow
from .similarity import FaceSimilarityVerifier, RekognitionComparer, SimilarityComparer
from .storage import CredentialRegistry, ReviewRepository, SubjectRepository
from .tokens import generate_ed25519_key_b64, load_ed25519_private_key_from_b64

log = logging.getLogger(__name__)


@dataclass
class Services:
    settings: Settings
    signing_key: Ed25519PrivateKey
    subjects: SubjectRepository
    credentials: CredentialRegistry
    ledger: VerificationLedger
    recorder: OutcomeRecorder
    reviews: ReviewWorkflow
    registration: RegistrationCeremony
    authentication: AuthenticationCeremony
    face: FaceSimilarityVerifier
    challenges: ChallengeStore
    audit: AuditLog
    clock: Callable[[], datetime]

    @property
    def public_key(self) -> Ed25519PublicKey:
        return self.signing_key.public_key()


def _signing_key(settings: Settings) -> Ed25519PrivateKey:
    if settings.SERVER_ED25519_SK_B64:
        return load_ed25519_private_key_from_b64(settings.SERVER_ED25519_SK_B64)
    # Tokens signed with an ephemeral key die with the process.
    log.warning("SERVER_ED25519_SK_B64 not set; using an ephemeral signing key")
    return load_ed25519_private_key_from_b64(generate_ed25519_key_b64())


def build_services(
    settings: Settings,
    *,
    challenges: Optional[ChallengeStore] = None,
    comparer: Optional[SimilarityComparer] = None,
    images: Optional[ImageStore] = None,
    clock: Callable[[], datetime] = utcnow,
    signing_key: Optional[Ed25519PrivateKey] = None,
    create_tables: bool = True,
) -> Services:
    engine = make_engine(settings.DATABASE_URL)
    if create_tables:
        init_db(engine)
    sessions = make_session_factory(engine)

    if challenges is None:
        challenges = RedisChallengeStore.from_url(settings.REDIS_URL)
    if comparer is None:
        comparer = RekognitionComparer.from_region(settings.AWS_REGION)
    if images is None:
        images = S3ImageStore.from_region(settings.AWS_REGION, settings.IMAGE_BUCKET)

    audit = AuditLog(settings.AUDIT_DIR)
    subjects = SubjectRepository(sessions)
    credentials = CredentialRegistry(sessions)
    ledger = VerificationLedger(sessions)
    recorder = OutcomeRecorder(ledger, subjects, clock)
    reviews = ReviewWorkflow(
        ReviewRepository(sessions),
        recorder,
        audit,
        clock,
        approval_interval_months=settings.REVIEW_REVERIFY_MONTHS,
    )

    return Services(
        settings=settings,
        signing_key=signing_key or _signing_key(settings),
        subjects=subjects,
        credentials=credentials,
        ledger=ledger,
        recorder=recorder,
        reviews=reviews,
        registration=RegistrationCeremony(settings, challenges, subjects, credentials, audit),
        authentication=AuthenticationCeremony(settings, challenges, subjects, credentials, recorder, reviews, audit),
        face=FaceSimilarityVerifier(
            comparer,
            images,
            subjects,
            recorder,
            reviews,
            audit,
            clock,
            threshold=settings.SIMILARITY_THRESHOLD,
            interval_months=settings.SIMILARITY_REVERIFY_MONTHS,
        ),
        challenges=challenges,
        audit=audit,
        clock=clock,
    )
