from conftest import bearer
from reverify.storage import Modality


def register(client, headers, authenticator, modality="FACE"):
    r = client.get(f"/api/biometric/register/options?modality={modality}", headers=headers)
    assert r.status_code == 200, r.text
    body = {"modality": modality, "credential": authenticator.register(r.json()["challenge"])}
    return client.post("/api/biometric/register/verify", json=body, headers=headers)


def authenticate(client, headers, authenticator, modality="FACE", **kwargs):
    r = client.get(f"/api/biometric/authenticate/options?modality={modality}", headers=headers)
    assert r.status_code == 200, r.text
    body = {"modality": modality, "credential": authenticator.assertion(r.json()["challenge"], **kwargs)}
    return client.post("/api/biometric/authenticate/verify", json=body, headers=headers)


def test_healthz(client):
    assert client.get("/healthz").json() == {"ok": True, "challengeStore": True}


def test_healthz_reports_unreachable_challenge_store(client, challenge_store):
    challenge_store.healthy = False

    r = client.get("/healthz")

    assert r.status_code == 503
    assert r.json() == {"ok": False, "challengeStore": False}


def test_requires_identity(client):
    r = client.get("/api/biometric/register/options")

    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "UNAUTHORIZED"


def test_options_are_not_cacheable(client, subject_headers):
    r = client.get("/api/biometric/register/options", headers=subject_headers)

    assert r.headers["cache-control"] == "no-store"
    assert r.json()["attachment"] == "platform"


def test_register_then_authenticate(client, subject_headers, authenticator, services):
    r = register(client, subject_headers, authenticator)
    assert r.status_code == 200, r.text
    assert r.json()["verified"] is True

    r = authenticate(client, subject_headers, authenticator)
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is True
    assert body["nextDueAt"].startswith("2026-04-30")

    assert services.credentials.lookup_by_modality("S1", Modality.FACE_KEY).sign_count == 1


def test_reenroll_conflict(client, subject_headers, authenticator):
    register(client, subject_headers, authenticator)

    r = client.get("/api/biometric/register/options?modality=face", headers=subject_headers)

    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "ALREADY_ENROLLED"


def test_authenticate_without_enrollment(client, subject_headers):
    r = client.get("/api/biometric/authenticate/options?modality=FINGERPRINT", headers=subject_headers)

    assert r.status_code == 404
    assert r.json()["detail"]["error"] == "NO_CREDENTIALS"


def test_replay_is_rejected_with_review_case(client, subject_headers, authenticator):
    register(client, subject_headers, authenticator)
    authenticate(client, subject_headers, authenticator, counter=5)

    r = authenticate(client, subject_headers, authenticator, counter=5)

    assert r.status_code == 403
    detail = r.json()["detail"]
    assert detail["error"] == "REPLAY_DETECTED"
    assert detail["status"] == "PENDING_REVIEW"
    assert isinstance(detail["reviewCaseId"], int)


def test_credentials_listing(client, subject_headers, authenticator):
    register(client, subject_headers, authenticator)

    creds = client.get("/api/biometric/credentials", headers=subject_headers).json()["credentials"]

    assert [c["modality"] for c in creds] == ["FACE_KEY"]
    assert len(creds[0]["credentialIdPreview"]) == 10


def test_face_flow_and_officer_review(client, subject_headers, officer_headers, comparer):
    comparer.score = 40.0
    r = client.post(
        "/api/verification/face",
        json={"image": "data:image/jpeg;base64,aGVsbG8="},
        headers=subject_headers,
    )
    assert r.status_code == 200, r.text
    body = r.json()
    assert body["success"] is False
    assert body["status"] == "PENDING_REVIEW"
    case_id = body["reviewCaseId"]

    queue = client.get("/api/verification/review", headers=officer_headers).json()
    assert [c["caseId"] for c in queue["items"]] == [case_id]

    r = client.post(
        f"/api/verification/review/{case_id}/decision",
        json={"decision": "APPROVE"},
        headers=officer_headers,
    )
    assert r.json() == {
        "success": True,
        "caseId": case_id,
        "newStatus": "APPROVED",
        "nextDueAt": r.json()["nextDueAt"],
    }

    r = client.post(
        f"/api/verification/review/{case_id}/decision",
        json={"decision": "REJECT"},
        headers=officer_headers,
    )
    assert r.status_code == 409
    assert r.json()["detail"]["error"] == "ALREADY_DECIDED"

    logs = client.get("/api/verification/logs?page=1&page_size=10", headers=subject_headers).json()
    assert [i["outcome"] for i in logs["items"]] == ["SUCCESS", "PENDING_REVIEW"]
    assert logs["total"] == 2


def test_subjects_cannot_decide_reviews(client, subject_headers):
    r = client.post("/api/verification/review/1/decision", json={"decision": "APPROVE"}, headers=subject_headers)

    assert r.status_code == 403


def test_officers_cannot_run_ceremonies(client, officer_headers):
    r = client.get("/api/biometric/register/options", headers=officer_headers)

    assert r.status_code == 403


def test_bad_image_payload(client, subject_headers):
    r = client.post("/api/verification/face", json={"image": "not base64!"}, headers=subject_headers)

    assert r.status_code == 400
    assert r.json()["detail"]["error"] == "INVALID_REQUEST"


def test_unknown_review_status(client, officer_headers):
    r = client.get("/api/verification/review?status=LOST", headers=officer_headers)

    assert r.status_code == 400


def test_token_for_unknown_subject_is_unauthorized(client, settings, services):
    headers = bearer(settings, "GHOST", "subject")

    r = client.get("/api/biometric/register/options", headers=headers)

    assert r.status_code == 401
    assert r.json()["detail"]["error"] == "UNAUTHORIZED"
    assert services.credentials.list_for_subject("GHOST") == []
