"""
reverify/similarity.py

Face similarity verification.

The captured image is compared with the subject's reference image. A score
at or above SIMILARITY_THRESHOLD (0-100) verifies the subject; anything else
(no face found, score below threshold) is inconclusive, not a failure: the
captured image is kept as a review artifact and a review case is opened.
Standing is left untouched until an officer decides.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, Optional

import boto3

from .audit import AuditLog
from .errors import NoFaceDetected, ReferenceImageMissing, SimilarityBelowThreshold
from .identity import CallerIdentity
from .images import ImageStore
from .ledger import AttemptOutcome, OutcomeRecorder, VerificationMethod
from .review import ReviewWorkflow
from .storage import SubjectRepository

log = logging.getLogger(__name__)


class SimilarityComparer(ABC):
    @abstractmethod
    def compare(self, reference: bytes, captured: bytes) -> float:
        """Return a 0-100 similarity score; NoFaceDetected if either image has no face."""


class RekognitionComparer(SimilarityComparer):
    def __init__(self, client):
        self._client = client

    @classmethod
    def from_region(cls, region: str) -> "RekognitionComparer":
        return cls(boto3.client("rekognition", region_name=region))

    def compare(self, reference: bytes, captured: bytes) -> float:
        try:
            # threshold 0 so every detected face comes back with a score
            resp = self._client.compare_faces(
                SourceImage={"Bytes": reference},
                TargetImage={"Bytes": captured},
                SimilarityThreshold=0,
            )
        except self._client.exceptions.ClientError as e:
            # Rekognition reports "no face in the source image" this way
            if e.response.get("Error", {}).get("Code") == "InvalidParameterException":
                raise NoFaceDetected()
            raise

        matches = resp.get("FaceMatches") or []
        if not matches:
            raise NoFaceDetected()
        return max(float(m.get("Similarity", 0.0)) for m in matches)


@dataclass
class FaceVerificationOutcome:
    success: bool
    similarity_score: Optional[float]
    status: AttemptOutcome
    next_due_at: Optional[datetime] = None
    review_case_id: Optional[int] = None
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {
            "success": self.success,
            "similarityScore": self.similarity_score,
            "status": self.status.value,
        }
        if self.next_due_at is not None:
            out["nextDueAt"] = self.next_due_at.isoformat()
        if self.review_case_id is not None:
            out["reviewCaseId"] = self.review_case_id
        if self.reason:
            out["reason"] = self.reason
        return out


class FaceSimilarityVerifier:
    def __init__(
        self,
        comparer: SimilarityComparer,
        images: ImageStore,
        subjects: SubjectRepository,
        recorder: OutcomeRecorder,
        reviews: ReviewWorkflow,
        audit: AuditLog,
        clock: Callable[[], datetime],
        threshold: float,
        interval_months: int,
    ):
        self.comparer = comparer
        self.images = images
        self.subjects = subjects
        self.recorder = recorder
        self.reviews = reviews
        self.audit = audit
        self.clock = clock
        self.threshold = threshold
        self.interval_months = interval_months

    def verify(self, caller: CallerIdentity, captured: bytes, **audit_ctx) -> FaceVerificationOutcome:
        subject = self.subjects.get(caller.caller_id)
        if not subject.reference_image_ref:
            raise ReferenceImageMissing()
        reference = self.images.get(subject.reference_image_ref)

        score: Optional[float] = None
        try:
            score = round(min(100.0, max(0.0, self.comparer.compare(reference, captured))), 2)
            if score < self.threshold:
                raise SimilarityBelowThreshold(similarity_score=score)
        except (NoFaceDetected, SimilarityBelowThreshold) as e:
            return self._inconclusive(subject.subject_id, captured, score, e.code, audit_ctx)

        next_due = self.recorder.success(
            subject.subject_id,
            VerificationMethod.SIMILARITY,
            self.interval_months,
            similarity_score=score,
        )
        self.audit.record(
            "approved",
            "similarity_match",
            subject_id=subject.subject_id,
            similarity_score=score,
            **audit_ctx,
        )
        return FaceVerificationOutcome(
            success=True,
            similarity_score=score,
            status=AttemptOutcome.SUCCESS,
            next_due_at=next_due,
        )

    def _inconclusive(
        self,
        subject_id: str,
        captured: bytes,
        score: Optional[float],
        reason: str,
        audit_ctx: Dict[str, Any],
    ) -> FaceVerificationOutcome:
        log.info("face check inconclusive subject=%s reason=%s score=%s", subject_id, reason, score)
        artifact = self.images.put_captured(subject_id, captured, self.clock())
        case = self.reviews.escalate(
            subject_id,
            VerificationMethod.SIMILARITY,
            reason=reason,
            artifact_ref=artifact,
            similarity_score=score,
        )
        self.audit.record(
            "inconclusive",
            reason.lower(),
            subject_id=subject_id,
            similarity_score=score,
            review_case_id=case.case_id,
            **audit_ctx,
        )
        return FaceVerificationOutcome(
            success=False,
            similarity_score=score,
            status=AttemptOutcome.PENDING_REVIEW,
            review_case_id=case.case_id,
            reason=reason,
        )
