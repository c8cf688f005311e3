"""
reverify/errors.py

Error taxonomy for the re-verification core.

Every failure the protocol can report is one class here. Each carries:
  - code:    stable machine-readable identifier (sent to clients)
  - status:  HTTP status used by main.py when rendering the error
  - message: human readable explanation
  - extra:   optional structured fields merged into the response detail

Protocol violations (VerificationFailed, PinNotAllowed, ReplayDetected) are
kept distinct from inconclusive biometric matches (NoFaceDetected,
SimilarityBelowThreshold). Only the latter are "soft" outcomes.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class ReverifyError(Exception):
    code = "SERVER_ERROR"
    status = 500
    default_message = "Unexpected error"

    def __init__(self, message: Optional[str] = None, **extra: Any):
        self.message = message or self.default_message
        self.extra: Dict[str, Any] = extra
        super().__init__(self.message)

    def to_detail(self) -> Dict[str, Any]:
        detail: Dict[str, Any] = {"error": self.code, "message": self.message}
        detail.update(self.extra)
        return detail


class InvalidRequest(ReverifyError):
    code = "INVALID_REQUEST"
    status = 400
    default_message = "Malformed request"


class Unauthorized(ReverifyError):
    code = "UNAUTHORIZED"
    status = 401
    default_message = "Missing or invalid caller identity"


class Forbidden(ReverifyError):
    code = "FORBIDDEN"
    status = 403
    default_message = "Caller is not allowed to perform this operation"


class NotFound(ReverifyError):
    code = "NOT_FOUND"
    status = 404
    default_message = "Not found"


class AlreadyEnrolled(ReverifyError):
    code = "ALREADY_ENROLLED"
    status = 409
    default_message = "A credential is already enrolled for this modality"


class ChallengeExpired(ReverifyError):
    code = "CHALLENGE_EXPIRED"
    status = 400
    default_message = "Ceremony challenge expired. Please restart."


class VerificationFailed(ReverifyError):
    code = "VERIFICATION_FAILED"
    status = 400
    default_message = "Unable to verify the signed response"


class PinNotAllowed(ReverifyError):
    code = "PIN_NOT_ALLOWED"
    status = 403
    default_message = "Biometric user verification is required; presence alone is not accepted"


class ReplayDetected(ReverifyError):
    code = "REPLAY_DETECTED"
    status = 403
    default_message = "Signature counter did not advance"


class StaleCounter(ReverifyError):
    """Storage-level compare-and-set miss; handlers report it as ReplayDetected."""

    code = "STALE_COUNTER"
    status = 409
    default_message = "Stored signature counter is not lower than the new value"


class NoCredentials(ReverifyError):
    code = "NO_CREDENTIALS"
    status = 404
    default_message = "No credentials enrolled for this modality. Please register first."


class ReferenceImageMissing(ReverifyError):
    code = "REFERENCE_IMAGE_MISSING"
    status = 400
    default_message = "No reference image on record for this subject"


class AlreadyDecided(ReverifyError):
    code = "ALREADY_DECIDED"
    status = 409
    default_message = "Review case has already been decided"


# Soft outcomes of the face similarity path. They are raised by comparers and
# caught by the verifier, never rendered as HTTP errors.
class NoFaceDetected(ReverifyError):
    code = "NO_FACE_DETECTED"
    status = 422
    default_message = "No face detected"


class SimilarityBelowThreshold(ReverifyError):
    code = "SIMILARITY_BELOW_THRESHOLD"
    status = 422
    default_message = "Face similarity is below threshold"
