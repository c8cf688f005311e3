"""
reverify/audit.py

Tamper-evident security audit log for verification ceremonies.

We append one JSON object per line (JSONL). Each event is hash-chained:

  H_0 = "0"*64
  H_n = SHA3-256( bytes.fromhex(H_{n-1}) || canonical_json(event_without_hash_fields) )

Each line stores:
  - prev_hash: hex string (64 chars)
  - hash:      hex string (64 chars)

Properties:
- Any modification, deletion, or reordering of log lines breaks the chain.
- Chain state is persisted in <dir>/verification_audit.state
- Uses file locking (flock) so several workers can share one log directory.

Events recorded: challenge issuance, enrollment, authentication accept/deny
(with reason codes), face-similarity outcomes, escalations and officer
decisions. Raw signatures and images are never written; only their lengths
and SHA3-256 digests.
"""

from __future__ import annotations

import fcntl
import hashlib
import json
import os
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

GENESIS_HASH = "0" * 64  # 32 bytes hex


def _canonical_json_bytes(obj: Dict[str, Any]) -> bytes:
    """Sorted keys, no whitespace, UTF-8."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def _sha3_256_hex(data: bytes) -> str:
    return hashlib.sha3_256(data).hexdigest()


def build_common(
    *,
    subject_id: str,
    modality: Optional[str] = None,
    purpose: Optional[str] = None,
    credential_id: Optional[str] = None,
    signature_bytes: Optional[bytes] = None,
    client_data_hash: Optional[bytes] = None,
    request_ip: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> Dict[str, Any]:
    """
    Build common audit fields. Keep this "boring" and stable.
    """
    out: Dict[str, Any] = {
        "ts": int(time.time()),
        "subject_id": subject_id,
    }

    if modality:
        out["modality"] = modality
    if purpose:
        out["purpose"] = purpose
    if credential_id:
        out["credential_id"] = credential_id
    if request_ip:
        out["request_ip"] = request_ip
    if user_agent:
        out["user_agent"] = user_agent[:200]

    if signature_bytes is not None:
        out["signature_len"] = len(signature_bytes)
        out["signature_sha3_256"] = _sha3_256_hex(signature_bytes)

    if client_data_hash is not None:
        out["client_data_sha256"] = client_data_hash.hex()

    return out


class AuditLog:
    def __init__(self, directory: str | Path):
        self.dir = Path(directory)
        self.log_path = self.dir / "verification_audit.jsonl"
        self.state_path = self.dir / "verification_audit.state"
        self.lock_path = self.dir / "verification_audit.lock"

    def _read_last_hash_unlocked(self) -> str:
        """
        Read last hash from the state file. Caller must hold lock.
        Returns GENESIS_HASH if state missing/empty.
        """
        if not self.state_path.exists():
            return GENESIS_HASH
        s = self.state_path.read_text(encoding="utf-8").strip()
        if len(s) != 64:
            return GENESIS_HASH
        try:
            bytes.fromhex(s)
        except ValueError:
            return GENESIS_HASH
        return s.lower()

    def append_event(self, event: Dict[str, Any]) -> str:
        """
        Append one event with hash chaining; returns the new chain head.

        - locks lock_path
        - reads prev hash
        - computes next hash over canonical event (excluding hash fields)
        - writes JSONL line containing prev_hash + hash
        - updates state file
        """
        self.dir.mkdir(parents=True, exist_ok=True)

        # Lock a dedicated file so it works even if log/state don't exist yet.
        with open(self.lock_path, "a+", encoding="utf-8") as lockf:
            fcntl.flock(lockf.fileno(), fcntl.LOCK_EX)
            try:
                prev_hash = self._read_last_hash_unlocked()

                # Never allow callers to inject their own chain fields.
                e = dict(event)
                e.pop("prev_hash", None)
                e.pop("hash", None)

                next_hash = _sha3_256_hex(bytes.fromhex(prev_hash) + _canonical_json_bytes(e))

                stored = dict(e)
                stored["prev_hash"] = prev_hash
                stored["hash"] = next_hash

                with open(self.log_path, "ab") as f:
                    f.write(_canonical_json_bytes(stored) + b"\n")
                    f.flush()
                    os.fsync(f.fileno())

                self.state_path.write_text(next_hash + "\n", encoding="utf-8")
            finally:
                fcntl.flock(lockf.fileno(), fcntl.LOCK_UN)

        return next_hash

    def record(self, result: str, reason: str, **fields: Any) -> str:
        """Convenience wrapper: common fields + result/reason."""
        common = build_common(
            subject_id=str(fields.pop("subject_id")),
            modality=fields.pop("modality", None),
            purpose=fields.pop("purpose", None),
            credential_id=fields.pop("credential_id", None),
            signature_bytes=fields.pop("signature_bytes", None),
            client_data_hash=fields.pop("client_data_hash", None),
            request_ip=fields.pop("request_ip", None),
            user_agent=fields.pop("user_agent", None),
        )
        return self.append_event({**common, "result": result, "reason": reason, **fields})

    def verify_chain(self) -> "VerifyResult":
        return verify_audit(self.log_path, self.state_path if self.state_path.exists() else None)


@dataclass
class VerifyResult:
    ok: bool
    lines: int
    last_hash: Optional[str]
    message: str


def verify_audit(log_path: Path, state_path: Optional[Path] = None) -> VerifyResult:
    """
    Re-validate every line of the chain, and optionally the state file.

    An absent log is valid (nothing recorded yet).
    """
    log_path = Path(log_path)
    if not log_path.exists():
        return VerifyResult(True, 0, None, "OK (no log)")

    lines = 0
    prev = GENESIS_HASH
    with open(log_path, "rb") as f:
        for lineno, raw_line in enumerate(f, start=1):
            raw_line = raw_line.strip()
            if not raw_line:
                continue
            lines += 1
            try:
                obj = json.loads(raw_line.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                return VerifyResult(False, lines, prev, f"{log_path}:{lineno}: invalid JSON: {e}")
            if not isinstance(obj, dict):
                return VerifyResult(False, lines, prev, f"{log_path}:{lineno}: JSON root must be an object")

            if obj.get("prev_hash") != prev:
                return VerifyResult(
                    False, lines, prev, f"{log_path}:{lineno}: prev_hash mismatch: expected {prev}"
                )

            body = dict(obj)
            body.pop("prev_hash", None)
            line_hash = body.pop("hash", None)

            expect = _sha3_256_hex(bytes.fromhex(prev) + _canonical_json_bytes(body))
            if expect != line_hash:
                return VerifyResult(
                    False, lines, prev, f"{log_path}:{lineno}: hash mismatch: expected {expect} got {line_hash}"
                )
            prev = line_hash

    last_hash = prev if lines else None
    if state_path is not None:
        state_path = Path(state_path)
        if not state_path.exists():
            return VerifyResult(False, lines, last_hash, f"State file not found: {state_path}")
        state_val = state_path.read_text(encoding="utf-8").strip().lower()
        if lines and state_val != last_hash:
            return VerifyResult(False, lines, last_hash, f"State mismatch: state={state_val} log_last={last_hash}")

    return VerifyResult(True, lines, last_hash, "OK")