import pytest
from pydantic import ValidationError

from reverify.config import Settings


def test_defaults_keep_interval_asymmetry():
    s = Settings()

    assert s.CHALLENGE_TTL_SECONDS == 300
    assert s.SIMILARITY_THRESHOLD == 80.0
    assert s.CREDENTIAL_REVERIFY_MONTHS == 3
    assert s.SIMILARITY_REVERIFY_MONTHS == 36


def test_origin_and_rp_id_are_normalized():
    s = Settings(ORIGIN=" https://Pensions.Example.gov:8443/ ", RP_ID="https://example.gov/")

    assert s.ORIGIN == "https://pensions.example.gov:8443"
    assert s.RP_ID == "example.gov"


def test_origin_outside_rp_id_is_rejected():
    with pytest.raises(ValidationError):
        Settings(ORIGIN="https://evil.example", RP_ID="pensions.example.gov")


def test_binding_can_be_relaxed():
    s = Settings(ORIGIN="https://evil.example", RP_ID="pensions.example.gov", STRICT_RP_BINDING="0")

    assert s.STRICT_RP_BINDING is False


def test_rp_id_with_port_is_rejected():
    with pytest.raises(ValidationError):
        Settings(RP_ID="localhost:3000")


def test_algorithms_from_env(monkeypatch):
    monkeypatch.setenv("ALLOWED_ALGORITHMS", "-7, -8")

    assert Settings().ALLOWED_ALGORITHMS == [-7, -8]


def test_threshold_range():
    with pytest.raises(ValidationError):
        Settings(SIMILARITY_THRESHOLD=120)
