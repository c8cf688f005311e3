import json

from reverify.audit import GENESIS_HASH, AuditLog, verify_audit


def test_chain_links_events(tmp_path):
    audit = AuditLog(tmp_path)

    h1 = audit.record("issued", "register_challenge_issued", subject_id="S1", modality="FACE_KEY")
    h2 = audit.record("enrolled", "attestation_valid", subject_id="S1", signature_bytes=b"sig")

    lines = [json.loads(l) for l in audit.log_path.read_text(encoding="utf-8").splitlines()]
    assert lines[0]["prev_hash"] == GENESIS_HASH
    assert lines[0]["hash"] == h1
    assert lines[1]["prev_hash"] == h1
    assert lines[1]["hash"] == h2
    assert audit.state_path.read_text(encoding="utf-8").strip() == h2

    res = audit.verify_chain()
    assert res.ok
    assert res.lines == 2
    assert res.last_hash == h2


def test_raw_signature_is_not_logged(tmp_path):
    audit = AuditLog(tmp_path)
    audit.record("denied", "invalid_signature", subject_id="S1", signature_bytes=b"\x01\x02\x03")

    event = json.loads(audit.log_path.read_text(encoding="utf-8"))
    assert event["signature_len"] == 3
    assert "signature_bytes" not in event
    assert len(event["signature_sha3_256"]) == 64


def test_tampering_is_detected(tmp_path):
    audit = AuditLog(tmp_path)
    audit.record("approved", "assertion_valid", subject_id="S1")
    audit.record("approved", "assertion_valid", subject_id="S2")

    text = audit.log_path.read_text(encoding="utf-8").replace('"subject_id":"S1"', '"subject_id":"S9"')
    audit.log_path.write_text(text, encoding="utf-8")

    assert not verify_audit(audit.log_path).ok
    assert "hash mismatch" in verify_audit(audit.log_path).message


def test_deleted_line_is_detected(tmp_path):
    audit = AuditLog(tmp_path)
    for i in range(3):
        audit.record("approved", "assertion_valid", subject_id=f"S{i}")

    lines = audit.log_path.read_text(encoding="utf-8").splitlines()
    audit.log_path.write_text("\n".join([lines[0], lines[2]]) + "\n", encoding="utf-8")

    assert not verify_audit(audit.log_path).ok


def test_state_mismatch_is_detected(tmp_path):
    audit = AuditLog(tmp_path)
    audit.record("approved", "assertion_valid", subject_id="S1")
    audit.state_path.write_text("0" * 64 + "\n", encoding="utf-8")

    assert not audit.verify_chain().ok


def test_absent_log_is_valid(tmp_path):
    assert verify_audit(tmp_path / "missing.jsonl").ok
