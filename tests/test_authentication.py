from datetime import datetime, timezone

import pytest

from conftest import SoftAuthenticator
from reverify.errors import (
    ChallengeExpired,
    NoCredentials,
    PinNotAllowed,
    ReplayDetected,
    StaleCounter,
    Unauthorized,
    VerificationFailed,
)
from reverify.identity import CallerIdentity
from reverify.ledger import AttemptOutcome, VerificationMethod
from reverify.models import AuthenticationCredential, RegistrationCredential
from reverify.storage import Modality, ReviewStatus, Standing


@pytest.fixture
def enrolled(services, subject, authenticator):
    opts = services.registration.issue_options(subject, Modality.FACE_KEY).to_dict()
    cred = RegistrationCredential.model_validate(authenticator.register(opts["challenge"]))
    services.registration.verify(subject, Modality.FACE_KEY, cred)
    return authenticator


def authenticate(services, caller, authenticator, modality=Modality.FACE_KEY, **kwargs):
    opts = services.authentication.issue_options(caller, modality).to_dict()
    assertion = AuthenticationCredential.model_validate(authenticator.assertion(opts["challenge"], **kwargs))
    return services.authentication.verify(caller, modality, assertion)


def test_options_list_only_the_subjects_credentials(services, subject, enrolled, challenge_store):
    opts = services.authentication.issue_options(subject, Modality.FACE_KEY).to_dict()

    stored = services.credentials.lookup_by_modality("S1", Modality.FACE_KEY)
    assert opts["allowedCredentialIds"] == [stored.credential_id_b64]
    assert opts["requireUserVerification"] is True
    assert challenge_store.puts[-1] == ("S1_FACE_KEY_authenticate", 300)


def test_options_without_enrollment_raise_no_credentials(services, subject):
    with pytest.raises(NoCredentials):
        services.authentication.issue_options(subject, Modality.FINGERPRINT_KEY)


def test_accepted_assertion_verifies_subject(services, subject, enrolled):
    accepted = authenticate(services, subject, enrolled)

    assert accepted.sign_count == 1
    # Jan 31 + 3 months clamps to Apr 30
    assert accepted.next_due_at == datetime(2026, 4, 30, 9, 0, tzinfo=timezone.utc)

    stored = services.credentials.lookup_by_modality("S1", Modality.FACE_KEY)
    assert stored.sign_count == 1

    s = services.subjects.get("S1")
    assert s.standing == Standing.VERIFIED
    assert s.next_due_at == accepted.next_due_at

    attempts, total = services.ledger.list_for_subject("S1", 1, 20)
    assert total == 1
    assert attempts[0].method == VerificationMethod.CREDENTIAL
    assert attempts[0].outcome == AttemptOutcome.SUCCESS
    assert attempts[0].modality == Modality.FACE_KEY


def test_counter_strictly_increases_across_authentications(services, subject, enrolled):
    authenticate(services, subject, enrolled)
    authenticate(services, subject, enrolled)

    assert services.credentials.lookup_by_modality("S1", Modality.FACE_KEY).sign_count == 2


def test_expired_challenge_is_rejected_without_escalation(services, subject, enrolled, clock):
    opts = services.authentication.issue_options(subject, Modality.FACE_KEY).to_dict()
    clock.advance(seconds=301)
    assertion = AuthenticationCredential.model_validate(enrolled.assertion(opts["challenge"]))

    with pytest.raises(ChallengeExpired):
        services.authentication.verify(subject, Modality.FACE_KEY, assertion)

    cases, total = services.reviews.list_cases(ReviewStatus.PENDING)
    assert total == 0
    assert services.credentials.lookup_by_modality("S1", Modality.FACE_KEY).sign_count == 0


def test_replayed_counter_is_rejected_and_counter_unchanged(services, subject, enrolled):
    services.credentials.bump_counter(enrolled.credential_id, 5)

    with pytest.raises(ReplayDetected) as exc:
        authenticate(services, subject, enrolled, counter=5)

    assert exc.value.extra["storedCounter"] == 5
    assert exc.value.extra["status"] == "PENDING_REVIEW"
    assert services.credentials.lookup_by_modality("S1", Modality.FACE_KEY).sign_count == 5


def test_rejection_escalates_to_review(services, subject, enrolled):
    with pytest.raises(PinNotAllowed) as exc:
        authenticate(services, subject, enrolled, uv=False)

    case_id = exc.value.extra["reviewCaseId"]
    case = services.reviews.reviews.get(case_id)
    assert case.status == ReviewStatus.PENDING
    assert case.reason == "PIN_NOT_ALLOWED"

    attempts, _ = services.ledger.list_for_subject("S1", 1, 20)
    assert [a.outcome for a in attempts] == [AttemptOutcome.PENDING_REVIEW]
    assert services.subjects.get("S1").standing == Standing.PENDING


def test_presence_only_assertion_is_pin_not_allowed_even_with_valid_signature(services, subject, enrolled):
    with pytest.raises(PinNotAllowed):
        authenticate(services, subject, enrolled, uv=False)

    assert services.credentials.lookup_by_modality("S1", Modality.FACE_KEY).sign_count == 0


def test_signature_from_another_key_fails(services, subject, enrolled):
    impostor = SoftAuthenticator()
    impostor.credential_id = enrolled.credential_id

    with pytest.raises(VerificationFailed) as exc:
        authenticate(services, subject, impostor)

    assert exc.value.extra["reason"] == "invalid_signature"
    assert exc.value.extra["status"] == "PENDING_REVIEW"


def test_credential_of_another_modality_is_not_allowed(services, subject, enrolled):
    finger = SoftAuthenticator()
    opts = services.registration.issue_options(subject, Modality.FINGERPRINT_KEY).to_dict()
    services.registration.verify(
        subject,
        Modality.FINGERPRINT_KEY,
        RegistrationCredential.model_validate(finger.register(opts["challenge"])),
    )

    opts = services.authentication.issue_options(subject, Modality.FACE_KEY).to_dict()
    assertion = AuthenticationCredential.model_validate(finger.assertion(opts["challenge"]))
    with pytest.raises(VerificationFailed) as exc:
        services.authentication.verify(subject, Modality.FACE_KEY, assertion)

    assert exc.value.extra["reason"] == "credential_not_allowed"


def test_lost_counter_race_reports_replay(services, subject, enrolled, monkeypatch):
    def lose_race(credential_id, new_counter):
        raise StaleCounter(new_counter=new_counter)

    monkeypatch.setattr(services.credentials, "bump_counter", lose_race)

    with pytest.raises(ReplayDetected):
        authenticate(services, subject, enrolled)


def test_credential_of_unknown_subject_cannot_authenticate(services, challenge_store):
    ghost = CallerIdentity(caller_id="GHOST", role="subject", name="Nobody")
    # a credential left behind by a subject whose record is gone
    services.credentials.enroll("GHOST", Modality.FACE_KEY, b"ghost-credential", b"\xa0", 0)

    with pytest.raises(Unauthorized):
        services.authentication.issue_options(ghost, Modality.FACE_KEY)

    assert challenge_store.puts == []
    assert services.credentials.lookup_by_modality("GHOST", Modality.FACE_KEY).sign_count == 0
    assert services.ledger.list_for_subject("GHOST", 1, 20) == ([], 0)
