# reverify/ledger.py
#
# Verification ledger: one append-only row per completed or failed check,
# plus the shared "subject passed" side effects (ledger SUCCESS row, standing
# VERIFIED, next-due moved forward). Rows are never updated or deleted.
import calendar
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func, select

from .db import VerificationAttemptRow, session_scope
from .storage import Modality, Standing, SubjectRepository, as_utc, clamp_page

log = logging.getLogger(__name__)


class VerificationMethod(str, Enum):
    CREDENTIAL = "CREDENTIAL"
    SIMILARITY = "SIMILARITY"
    MANUAL_REVIEW = "MANUAL_REVIEW"


class AttemptOutcome(str, Enum):
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    PENDING_REVIEW = "PENDING_REVIEW"


@dataclass
class VerificationAttempt:
    attempt_id: int
    subject_id: str
    method: VerificationMethod
    modality: Optional[Modality]
    outcome: AttemptOutcome
    created_at: datetime
    next_due_at: Optional[datetime] = None
    similarity_score: Optional[float] = None


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day (Jan 31 + 1 -> Feb 28/29)."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _attempt(row: VerificationAttemptRow) -> VerificationAttempt:
    return VerificationAttempt(
        attempt_id=row.id,
        subject_id=row.subject_id,
        method=VerificationMethod(row.method),
        modality=Modality(row.modality) if row.modality else None,
        outcome=AttemptOutcome(row.outcome),
        created_at=as_utc(row.created_at),
        next_due_at=as_utc(row.next_due_at),
        similarity_score=row.similarity_score,
    )


class VerificationLedger:
    def __init__(self, session_factory):
        self._sessions = session_factory

    def append(
        self,
        subject_id: str,
        method: VerificationMethod,
        outcome: AttemptOutcome,
        created_at: datetime,
        modality: Optional[Modality] = None,
        next_due_at: Optional[datetime] = None,
        similarity_score: Optional[float] = None,
    ) -> VerificationAttempt:
        if next_due_at is not None and outcome != AttemptOutcome.SUCCESS:
            raise ValueError("next_due_at is only recorded on SUCCESS")
        with session_scope(self._sessions) as s:
            row = VerificationAttemptRow(
                subject_id=subject_id,
                method=method.value,
                modality=modality.value if modality else None,
                outcome=outcome.value,
                similarity_score=similarity_score,
                created_at=created_at,
                next_due_at=next_due_at,
            )
            s.add(row)
            s.flush()
            return _attempt(row)

    def list_for_subject(self, subject_id: str, page: int, page_size: int) -> Tuple[List[VerificationAttempt], int]:
        page, page_size = clamp_page(page, page_size)
        with session_scope(self._sessions) as s:
            total = s.execute(
                select(func.count())
                .select_from(VerificationAttemptRow)
                .where(VerificationAttemptRow.subject_id == subject_id)
            ).scalar_one()
            rows = s.execute(
                select(VerificationAttemptRow)
                .where(VerificationAttemptRow.subject_id == subject_id)
                .order_by(VerificationAttemptRow.created_at.desc(), VerificationAttemptRow.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            ).scalars()
            return [_attempt(r) for r in rows], total


class OutcomeRecorder:
    """
    Applies the downstream effects of a verification outcome.

    The ledger row and the subject update are separate writes; a failure
    between them is logged and surfaced, never compensated.
    """

    def __init__(self, ledger: VerificationLedger, subjects: SubjectRepository, clock: Callable[[], datetime]):
        self.ledger = ledger
        self.subjects = subjects
        self.clock = clock

    def success(
        self,
        subject_id: str,
        method: VerificationMethod,
        interval_months: int,
        modality: Optional[Modality] = None,
        similarity_score: Optional[float] = None,
    ) -> datetime:
        now = self.clock()
        next_due = add_months(now, interval_months)
        self.ledger.append(
            subject_id,
            method,
            AttemptOutcome.SUCCESS,
            created_at=now,
            modality=modality,
            next_due_at=next_due,
            similarity_score=similarity_score,
        )
        try:
            self.subjects.set_standing(subject_id, Standing.VERIFIED, next_due_at=next_due)
        except Exception:
            log.error("ledger SUCCESS written but standing update failed subject=%s", subject_id, exc_info=True)
            raise
        log.info("subject=%s verified via %s, next due %s", subject_id, method.value, next_due.isoformat())
        return next_due

    def pending_review(
        self,
        subject_id: str,
        method: VerificationMethod,
        modality: Optional[Modality] = None,
        similarity_score: Optional[float] = None,
    ) -> VerificationAttempt:
        return self.ledger.append(
            subject_id,
            method,
            AttemptOutcome.PENDING_REVIEW,
            created_at=self.clock(),
            modality=modality,
            similarity_score=similarity_score,
        )

    def rejected(self, subject_id: str, method: VerificationMethod) -> VerificationAttempt:
        now = self.clock()
        attempt = self.ledger.append(subject_id, method, AttemptOutcome.FAILED, created_at=now)
        self.subjects.set_standing(subject_id, Standing.FLAGGED)
        return attempt
