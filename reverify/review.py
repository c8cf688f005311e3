# reverify/review.py
#
# Review escalation workflow.
#
# A case is opened whenever an automated check is rejected or inconclusive;
# every escalation opens a new case. An officer decides a case exactly once:
#   APPROVE -> case APPROVED, ledger SUCCESS (MANUAL_REVIEW), subject VERIFIED
#   REJECT  -> case REJECTED, ledger FAILED (MANUAL_REVIEW), subject FLAGGED
# A rejected subject is not retried automatically; a human re-initiates.
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Callable, List, Optional, Tuple

from .audit import AuditLog
from .errors import InvalidRequest
from .identity import CallerIdentity
from .ledger import OutcomeRecorder, VerificationMethod
from .storage import Modality, ReviewCase, ReviewRepository, ReviewStatus, clamp_page

log = logging.getLogger(__name__)


class Decision(str, Enum):
    APPROVE = "APPROVE"
    REJECT = "REJECT"

    @classmethod
    def parse(cls, value: str) -> "Decision":
        v = str(value or "").strip().upper()
        # tolerate the past-tense spelling used by some officer clients
        v = {"APPROVED": "APPROVE", "REJECTED": "REJECT"}.get(v, v)
        try:
            return cls(v)
        except ValueError:
            raise InvalidRequest("decision must be APPROVE or REJECT")


@dataclass
class DecisionResult:
    case: ReviewCase
    next_due_at: Optional[datetime] = None

    @property
    def new_status(self) -> ReviewStatus:
        return self.case.status


class ReviewWorkflow:
    def __init__(
        self,
        reviews: ReviewRepository,
        recorder: OutcomeRecorder,
        audit: AuditLog,
        clock: Callable[[], datetime],
        approval_interval_months: int,
    ):
        self.reviews = reviews
        self.recorder = recorder
        self.audit = audit
        self.clock = clock
        self.approval_interval_months = approval_interval_months

    def create_case(self, subject_id: str, artifact_ref: Optional[str] = None, reason: Optional[str] = None) -> ReviewCase:
        case = self.reviews.create(subject_id, artifact_ref, reason, created_at=self.clock())
        log.info("review case %s opened subject=%s reason=%s", case.case_id, subject_id, reason)
        return case

    def escalate(
        self,
        subject_id: str,
        method: VerificationMethod,
        reason: str,
        artifact_ref: Optional[str] = None,
        modality: Optional[Modality] = None,
        similarity_score: Optional[float] = None,
    ) -> ReviewCase:
        """Open a case and append the matching PENDING_REVIEW ledger row."""
        case = self.create_case(subject_id, artifact_ref, reason)
        self.recorder.pending_review(subject_id, method, modality=modality, similarity_score=similarity_score)
        self.audit.record(
            "escalated",
            reason,
            subject_id=subject_id,
            modality=modality.value if modality else None,
            method=method.value,
            review_case_id=case.case_id,
        )
        return case

    def decide(
        self,
        case_id: int,
        decision: Decision,
        officer: CallerIdentity,
        notes: Optional[str] = None,
    ) -> DecisionResult:
        status = ReviewStatus.APPROVED if decision == Decision.APPROVE else ReviewStatus.REJECTED
        case = self.reviews.decide(case_id, status, officer.caller_id, decided_at=self.clock())

        next_due = None
        if status == ReviewStatus.APPROVED:
            next_due = self.recorder.success(
                case.subject_id,
                VerificationMethod.MANUAL_REVIEW,
                self.approval_interval_months,
            )
        else:
            self.recorder.rejected(case.subject_id, VerificationMethod.MANUAL_REVIEW)

        self.audit.record(
            "decided",
            status.value.lower(),
            subject_id=case.subject_id,
            review_case_id=case.case_id,
            officer_id=officer.caller_id,
            notes=notes or "",
        )
        log.info("review case %s %s by officer=%s", case.case_id, status.value, officer.caller_id)
        return DecisionResult(case=case, next_due_at=next_due)

    def list_cases(self, status: ReviewStatus, page: int = 1, page_size: int = 20) -> Tuple[List[ReviewCase], int]:
        page, page_size = clamp_page(page, page_size)
        return self.reviews.list_by_status(status, page, page_size)
