# reverify/main.py
#
# Periodic identity re-verification service (FastAPI).
#
# High-level architecture
# -----------------------
# Subjects (pension beneficiaries) must prove, on a schedule, that they are
# still the person who registered. Two ways to do it:
#
#   1) Credential ceremony (WebAuthn / passkey, platform authenticator):
#        GET  /api/biometric/register/options      -> challenge + policy
#        POST /api/biometric/register/verify       -> credential enrolled
#        GET  /api/biometric/authenticate/options  -> challenge + allowed ids
#        POST /api/biometric/authenticate/verify   -> subject verified
#
#   2) Face similarity against the reference image taken at registration:
#        POST /api/verification/face
#
# Anything rejected or inconclusive becomes a review case that an officer
# decides:
#        GET  /api/verification/review
#        POST /api/verification/review/{case_id}/decision
#
# Module map:
#   - registration.py / authentication.py : the two ceremonies
#   - similarity.py : face comparison policy (Rekognition)
#   - review.py     : review cases + officer decisions
#   - ledger.py     : verification attempts, standing, next-due
#   - challenges.py : Redis challenge store (shared between workers)
#   - audit.py      : hash-chained audit log (security telemetry, forensics)
#   - identity.py   : caller identity from signed bearer tokens
#
# The app is built by create_app(); run with
#   uvicorn --factory reverify.main:create_app
# or `reverify serve`.
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, Query, Request, Response
from fastapi.responses import JSONResponse

from .config import settings as default_settings
from .errors import InvalidRequest, ReverifyError
from .identity import CallerIdentity, require_officer, require_subject, resolve_caller
from .images import decode_image_b64
from .logging_config import configure_logging, set_request_id
from .models import AuthenticateVerifyRequest, FaceVerifyRequest, RegisterVerifyRequest, ReviewDecisionRequest
from .review import Decision
from .services import Services, build_services
from .storage import Modality, ReviewStatus, clamp_page

log = logging.getLogger(__name__)

router = APIRouter()


# -----------------------------------------------------------------------------
# Dependencies
# -----------------------------------------------------------------------------
def get_services(request: Request) -> Services:
    return request.app.state.services


def current_caller(
    services: Services = Depends(get_services),
    authorization: Optional[str] = Header(default=None),
) -> CallerIdentity:
    return resolve_caller(services.public_key, authorization)


def subject_caller(caller: CallerIdentity = Depends(current_caller)) -> CallerIdentity:
    return require_subject(caller)


def officer_caller(caller: CallerIdentity = Depends(current_caller)) -> CallerIdentity:
    return require_officer(caller)


def _audit_ctx(request: Request) -> Dict[str, Any]:
    return {
        "request_ip": request.client.host if request.client else None,
        "user_agent": request.headers.get("user-agent"),
    }


def _no_store(response: Response) -> None:
    # challenges must never be served from a cache
    response.headers["Cache-Control"] = "no-store"


def _page(items, total: int, page: int, page_size: int) -> Dict[str, Any]:
    page, page_size = clamp_page(page, page_size)
    return {
        "items": items,
        "page": page,
        "pageSize": page_size,
        "total": total,
        "totalPages": (total + page_size - 1) // page_size,
    }


# -----------------------------------------------------------------------------
# Credential ceremonies
# -----------------------------------------------------------------------------
@router.get("/api/biometric/register/options")
def register_options(
    response: Response,
    modality: Optional[str] = None,
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    opts = services.registration.issue_options(caller, Modality.parse(modality))
    _no_store(response)
    return opts.to_dict()


@router.post("/api/biometric/register/verify")
def register_verify(
    request: Request,
    body: RegisterVerifyRequest,
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    modality = Modality.parse(body.modality)
    cred = services.registration.verify(caller, modality, body.credential, **_audit_ctx(request))
    return {
        "verified": True,
        "credentialId": cred.credential_id_b64,
        "modality": cred.modality.value,
        "message": f"{cred.modality.value} registered successfully",
    }


@router.get("/api/biometric/authenticate/options")
def authenticate_options(
    response: Response,
    modality: Optional[str] = None,
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    opts = services.authentication.issue_options(caller, Modality.parse(modality))
    _no_store(response)
    return opts.to_dict()


@router.post("/api/biometric/authenticate/verify")
def authenticate_verify(
    request: Request,
    body: AuthenticateVerifyRequest,
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    modality = Modality.parse(body.modality)
    accepted = services.authentication.verify(caller, modality, body.credential, **_audit_ctx(request))
    return {
        "success": True,
        "nextDueAt": accepted.next_due_at.isoformat(),
        "modality": accepted.modality.value,
    }


@router.get("/api/biometric/credentials")
def list_credentials(
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    creds = services.credentials.list_for_subject(caller.caller_id)
    return {
        "credentials": [
            {
                "modality": c.modality.value,
                "credentialIdPreview": c.credential_id_b64[:10],
                "transports": c.transports,
                "enrolledAt": c.enrolled_at.isoformat() if c.enrolled_at else None,
            }
            for c in creds
        ]
    }


# -----------------------------------------------------------------------------
# Face similarity + ledger
# -----------------------------------------------------------------------------
@router.post("/api/verification/face")
def verify_face(
    request: Request,
    body: FaceVerifyRequest,
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    captured = decode_image_b64(body.image)
    outcome = services.face.verify(caller, captured, **_audit_ctx(request))
    return outcome.to_dict()


@router.get("/api/verification/logs")
def verification_logs(
    page: int = Query(1),
    page_size: int = Query(20),
    caller: CallerIdentity = Depends(subject_caller),
    services: Services = Depends(get_services),
):
    attempts, total = services.ledger.list_for_subject(caller.caller_id, page, page_size)
    items = [
        {
            "id": a.attempt_id,
            "method": a.method.value,
            "modality": a.modality.value if a.modality else None,
            "outcome": a.outcome.value,
            "similarityScore": a.similarity_score,
            "createdAt": a.created_at.isoformat(),
            "nextDueAt": a.next_due_at.isoformat() if a.next_due_at else None,
        }
        for a in attempts
    ]
    return _page(items, total, page, page_size)


# -----------------------------------------------------------------------------
# Officer review
# -----------------------------------------------------------------------------
@router.get("/api/verification/review")
def review_queue(
    status: str = Query("PENDING"),
    page: int = Query(1),
    page_size: int = Query(20),
    officer: CallerIdentity = Depends(officer_caller),
    services: Services = Depends(get_services),
):
    try:
        wanted = ReviewStatus(status.strip().upper())
    except ValueError:
        raise InvalidRequest("status must be PENDING, APPROVED or REJECTED")

    cases, total = services.reviews.list_cases(wanted, page, page_size)
    items = [
        {
            "caseId": c.case_id,
            "subjectId": c.subject_id,
            "status": c.status.value,
            "reason": c.reason,
            "artifactRef": c.artifact_ref,
            "createdAt": c.created_at.isoformat(),
            "decidedAt": c.decided_at.isoformat() if c.decided_at else None,
            "decidedBy": c.decided_by,
        }
        for c in cases
    ]
    return _page(items, total, page, page_size)


@router.post("/api/verification/review/{case_id}/decision")
def review_decision(
    case_id: int,
    body: ReviewDecisionRequest,
    officer: CallerIdentity = Depends(officer_caller),
    services: Services = Depends(get_services),
):
    result = services.reviews.decide(case_id, Decision.parse(body.decision), officer, notes=body.notes)
    out = {"success": True, "caseId": result.case.case_id, "newStatus": result.new_status.value}
    if result.next_due_at is not None:
        out["nextDueAt"] = result.next_due_at.isoformat()
    return out


@router.get("/healthz")
def healthz(response: Response, services: Services = Depends(get_services)):
    challenge_store = services.challenges.ping()
    if not challenge_store:
        response.status_code = 503
    return {"ok": challenge_store, "challengeStore": challenge_store}


# -----------------------------------------------------------------------------
# App factory
# -----------------------------------------------------------------------------
def create_app(services: Optional[Services] = None) -> FastAPI:
    if services is None:
        configure_logging(default_settings.LOG_LEVEL, default_settings.LOG_JSON)
        services = build_services(default_settings)

    app = FastAPI(title="Identity Re-verification", version="0.1.0")
    app.state.services = services
    app.include_router(router)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = set_request_id(request.headers.get("x-request-id"))
        response = await call_next(request)
        response.headers["X-Request-ID"] = rid
        return response

    @app.exception_handler(ReverifyError)
    async def reverify_error_handler(request: Request, exc: ReverifyError):
        if exc.status >= 500:
            log.error("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status, content={"detail": exc.to_detail()})

    log.info(
        "reverify ready rp_id=%s origin=%s threshold=%.1f",
        services.settings.RP_ID,
        services.settings.ORIGIN,
        services.settings.SIMILARITY_THRESHOLD,
    )
    return app
