# reverify/storage.py
#
# Domain records and the repositories that persist them.
#
# Subjects are owned by the wider registration system; this module only reads
# them and updates standing/next-due. Credentials are created once per
# (subject, modality) and afterwards only their signature counter moves.
# Review cases move PENDING -> APPROVED | REJECTED exactly once.
import base64
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional, Tuple

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError

from .db import CredentialRow, ReviewCaseRow, SubjectRow, session_scope
from .errors import AlreadyDecided, AlreadyEnrolled, InvalidRequest, NotFound, StaleCounter

log = logging.getLogger(__name__)

MAX_PAGE_SIZE = 50


class Modality(str, Enum):
    FACE_KEY = "FACE_KEY"
    FINGERPRINT_KEY = "FINGERPRINT_KEY"

    @classmethod
    def parse(cls, value: Optional[str]) -> "Modality":
        """
        Accepts FACE / FINGERPRINT / FACE_KEY / FINGERPRINT_KEY (any case).
        A missing value means FACE_KEY.
        """
        if value is None or not str(value).strip():
            return cls.FACE_KEY
        v = str(value).strip().upper()
        if not v.endswith("_KEY"):
            v += "_KEY"
        try:
            return cls(v)
        except ValueError:
            raise InvalidRequest(f"unsupported modality: {value}")


class Standing(str, Enum):
    PENDING = "PENDING"
    VERIFIED = "VERIFIED"
    FLAGGED = "FLAGGED"


class ReviewStatus(str, Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


def b64url(b: bytes) -> str:
    return base64.urlsafe_b64encode(b).decode("ascii").rstrip("=")


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes; everything stored here is UTC.
    if dt is not None and dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def clamp_page(page: int, page_size: int) -> Tuple[int, int]:
    return max(1, int(page)), min(MAX_PAGE_SIZE, max(1, int(page_size)))


@dataclass
class Subject:
    subject_id: str
    display_name: str
    email: Optional[str]
    standing: Standing
    next_due_at: Optional[datetime]
    reference_image_ref: Optional[str]


@dataclass
class Credential:
    subject_id: str
    modality: Modality
    credential_id: bytes
    public_key: bytes  # CBOR-encoded COSE key
    sign_count: int
    transports: List[str] = field(default_factory=list)
    enrolled_at: Optional[datetime] = None

    @property
    def credential_id_b64(self) -> str:
        return b64url(self.credential_id)


@dataclass
class ReviewCase:
    case_id: int
    subject_id: str
    artifact_ref: Optional[str]
    status: ReviewStatus
    created_at: datetime
    decided_at: Optional[datetime] = None
    decided_by: Optional[str] = None
    reason: Optional[str] = None


def _subject(row: SubjectRow) -> Subject:
    return Subject(
        subject_id=row.id,
        display_name=row.display_name,
        email=row.email,
        standing=Standing(row.standing),
        next_due_at=as_utc(row.next_due_at),
        reference_image_ref=row.reference_image_ref,
    )


def _credential(row: CredentialRow) -> Credential:
    transports = [t for t in (row.transports or "").split(",") if t]
    return Credential(
        subject_id=row.subject_id,
        modality=Modality(row.modality),
        credential_id=row.credential_id,
        public_key=row.public_key,
        sign_count=row.sign_count,
        transports=transports,
        enrolled_at=as_utc(row.enrolled_at),
    )


def _case(row: ReviewCaseRow) -> ReviewCase:
    return ReviewCase(
        case_id=row.id,
        subject_id=row.subject_id,
        artifact_ref=row.artifact_ref,
        status=ReviewStatus(row.status),
        created_at=as_utc(row.created_at),
        decided_at=as_utc(row.decided_at),
        decided_by=row.decided_by,
        reason=row.reason,
    )


class SubjectRepository:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def get(self, subject_id: str) -> Subject:
        with session_scope(self._sessions) as s:
            row = s.get(SubjectRow, subject_id)
            if row is None:
                raise NotFound(f"subject {subject_id} not found")
            return _subject(row)

    def add(
        self,
        subject_id: str,
        display_name: str,
        email: Optional[str] = None,
        reference_image_ref: Optional[str] = None,
    ) -> Subject:
        """Registration itself is external; this seeds a record (tests, CLI)."""
        with session_scope(self._sessions) as s:
            row = SubjectRow(
                id=subject_id,
                display_name=display_name,
                email=email,
                standing=Standing.PENDING.value,
                reference_image_ref=reference_image_ref,
            )
            s.add(row)
            s.flush()
            return _subject(row)

    def set_standing(
        self,
        subject_id: str,
        standing: Standing,
        next_due_at: Optional[datetime] = None,
    ) -> None:
        values = {"standing": standing.value}
        if next_due_at is not None:
            values["next_due_at"] = next_due_at
        with session_scope(self._sessions) as s:
            cur = s.execute(update(SubjectRow).where(SubjectRow.id == subject_id).values(**values))
            if cur.rowcount != 1:
                raise NotFound(f"subject {subject_id} not found")


class CredentialRegistry:
    """
    One public-key credential per (subject, modality).

    Uniqueness is a storage constraint, not a prior existence check; the
    existence check in the registration handler only saves a wasted ceremony.
    """

    def __init__(self, session_factory):
        self._sessions = session_factory

    def enroll(
        self,
        subject_id: str,
        modality: Modality,
        credential_id: bytes,
        public_key: bytes,
        counter: int,
        transports: Optional[List[str]] = None,
        enrolled_at: Optional[datetime] = None,
    ) -> Credential:
        if counter < 0:
            raise InvalidRequest("signature counter must be non-negative")
        row = CredentialRow(
            subject_id=subject_id,
            modality=modality.value,
            credential_id=credential_id,
            public_key=public_key,
            sign_count=counter,
            transports=",".join(transports or []),
        )
        if enrolled_at is not None:
            row.enrolled_at = enrolled_at
        try:
            with session_scope(self._sessions) as s:
                s.add(row)
                s.flush()
                return _credential(row)
        except IntegrityError:
            log.info("enroll conflict subject=%s modality=%s", subject_id, modality.value)
            raise AlreadyEnrolled(f"{modality.value} already enrolled for subject {subject_id}")

    def lookup_by_modality(self, subject_id: str, modality: Modality) -> Credential:
        with session_scope(self._sessions) as s:
            row = s.execute(
                select(CredentialRow).where(
                    CredentialRow.subject_id == subject_id,
                    CredentialRow.modality == modality.value,
                )
            ).scalar_one_or_none()
            if row is None:
                raise NotFound(f"no {modality.value} credential for subject {subject_id}")
            return _credential(row)

    def is_enrolled(self, subject_id: str, modality: Modality) -> bool:
        try:
            self.lookup_by_modality(subject_id, modality)
        except NotFound:
            return False
        return True

    def lookup_allowed(self, subject_id: str, modality: Modality) -> List[bytes]:
        with session_scope(self._sessions) as s:
            rows = s.execute(
                select(CredentialRow.credential_id).where(
                    CredentialRow.subject_id == subject_id,
                    CredentialRow.modality == modality.value,
                )
            ).scalars()
            return list(rows)

    def lookup_by_credential_id(self, credential_id: bytes) -> Credential:
        with session_scope(self._sessions) as s:
            row = s.execute(
                select(CredentialRow).where(CredentialRow.credential_id == credential_id)
            ).scalar_one_or_none()
            if row is None:
                raise NotFound("unknown credential")
            return _credential(row)

    def list_for_subject(self, subject_id: str) -> List[Credential]:
        with session_scope(self._sessions) as s:
            rows = s.execute(
                select(CredentialRow)
                .where(CredentialRow.subject_id == subject_id)
                .order_by(CredentialRow.enrolled_at.desc())
            ).scalars()
            return [_credential(r) for r in rows]

    def bump_counter(self, credential_id: bytes, new_counter: int) -> None:
        """
        Atomic compare-and-set: the row moves only if new_counter > stored.
        Two concurrent callers with the same counter cannot both succeed.
        """
        with session_scope(self._sessions) as s:
            cur = s.execute(
                update(CredentialRow)
                .where(
                    CredentialRow.credential_id == credential_id,
                    CredentialRow.sign_count < new_counter,
                )
                .values(sign_count=new_counter)
            )
            if cur.rowcount != 1:
                raise StaleCounter(new_counter=new_counter)


class ReviewRepository:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def create(
        self,
        subject_id: str,
        artifact_ref: Optional[str],
        reason: Optional[str],
        created_at: datetime,
    ) -> ReviewCase:
        with session_scope(self._sessions) as s:
            row = ReviewCaseRow(
                subject_id=subject_id,
                artifact_ref=artifact_ref,
                reason=reason,
                status=ReviewStatus.PENDING.value,
                created_at=created_at,
            )
            s.add(row)
            s.flush()
            return _case(row)

    def get(self, case_id: int) -> ReviewCase:
        with session_scope(self._sessions) as s:
            row = s.get(ReviewCaseRow, case_id)
            if row is None:
                raise NotFound(f"review case {case_id} not found")
            return _case(row)

    def decide(self, case_id: int, status: ReviewStatus, officer_id: str, decided_at: datetime) -> ReviewCase:
        """PENDING -> status, conditional on the row still being PENDING."""
        with session_scope(self._sessions) as s:
            cur = s.execute(
                update(ReviewCaseRow)
                .where(
                    ReviewCaseRow.id == case_id,
                    ReviewCaseRow.status == ReviewStatus.PENDING.value,
                )
                .values(status=status.value, decided_at=decided_at, decided_by=officer_id)
            )
            if cur.rowcount != 1:
                if s.get(ReviewCaseRow, case_id) is None:
                    raise NotFound(f"review case {case_id} not found")
                raise AlreadyDecided(caseId=case_id)
            return _case(s.get(ReviewCaseRow, case_id))

    def list_by_status(self, status: ReviewStatus, page: int, page_size: int) -> Tuple[List[ReviewCase], int]:
        with session_scope(self._sessions) as s:
            total = s.execute(
                select(func.count()).select_from(ReviewCaseRow).where(ReviewCaseRow.status == status.value)
            ).scalar_one()
            rows = s.execute(
                select(ReviewCaseRow)
                .where(ReviewCaseRow.status == status.value)
                .order_by(ReviewCaseRow.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars()
            return [_case(r) for r in rows], total
