"""
reverify command line.

  reverify gen-key                      print a fresh base64 Ed25519 seed
  reverify mint-token SUBJECT [--role]  issue an identity token (ops / local testing)
  reverify init-db                      create tables for DATABASE_URL
  reverify seed-subject ID NAME         insert a subject record (local testing)
  reverify verify-audit [LOG]           re-validate the audit hash chain
  reverify serve                        run the API under uvicorn

Exit codes:
- 0: OK
- 1: failure (verify-audit: chain broken)
- 2: usage error
"""

from __future__ import annotations

import argparse
import sys
from pathlib import Path
from typing import List, Optional

import uvicorn

from .audit import AuditLog, verify_audit
from .config import Settings
from .db import init_db, make_engine, make_session_factory
from .identity import OFFICER_ROLES, ROLE_SUBJECT, issue_identity_token
from .logging_config import configure_logging
from .storage import SubjectRepository
from .tokens import generate_ed25519_key_b64, load_ed25519_private_key_from_b64


def cmd_gen_key(args: argparse.Namespace, settings: Settings) -> int:
    print(generate_ed25519_key_b64())
    return 0


def cmd_mint_token(args: argparse.Namespace, settings: Settings) -> int:
    if not settings.SERVER_ED25519_SK_B64:
        print("SERVER_ED25519_SK_B64 is not set (run `reverify gen-key`)", file=sys.stderr)
        return 1
    sk = load_ed25519_private_key_from_b64(settings.SERVER_ED25519_SK_B64)
    ttl = args.ttl if args.ttl is not None else settings.IDENTITY_TOKEN_TTL_SECONDS
    print(issue_identity_token(sk, args.subject, args.role, name=args.name, ttl_seconds=ttl))
    return 0


def cmd_init_db(args: argparse.Namespace, settings: Settings) -> int:
    init_db(make_engine(settings.DATABASE_URL))
    print(f"initialized {settings.DATABASE_URL}")
    return 0


def cmd_seed_subject(args: argparse.Namespace, settings: Settings) -> int:
    engine = make_engine(settings.DATABASE_URL)
    init_db(engine)
    subjects = SubjectRepository(make_session_factory(engine))
    s = subjects.add(args.subject, args.name, email=args.email, reference_image_ref=args.reference_image)
    print(f"subject {s.subject_id} standing={s.standing.value}")
    return 0


def cmd_verify_audit(args: argparse.Namespace, settings: Settings) -> int:
    if args.log is not None:
        log_path = args.log
        state_path = args.state
    else:
        audit = AuditLog(settings.AUDIT_DIR)
        log_path = audit.log_path
        state_path = args.state or (audit.state_path if audit.state_path.exists() else None)

    res = verify_audit(log_path, state_path)
    if res.ok:
        print("OK")
        print(f"lines={res.lines}")
        if res.last_hash:
            print(f"last_hash={res.last_hash}")
        return 0

    print("FAIL", file=sys.stderr)
    print(res.message, file=sys.stderr)
    print(f"lines={res.lines}", file=sys.stderr)
    return 1


def cmd_serve(args: argparse.Namespace, settings: Settings) -> int:
    configure_logging(settings.LOG_LEVEL, settings.LOG_JSON)
    uvicorn.run(
        "reverify.main:create_app",
        factory=True,
        host=args.host,
        port=args.port,
        workers=args.workers,
        log_config=None,
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="reverify", description="Identity re-verification service tools.")
    sub = p.add_subparsers(dest="command", required=True)

    sp = sub.add_parser("gen-key", help="Print a fresh base64 Ed25519 seed for SERVER_ED25519_SK_B64.")
    sp.set_defaults(func=cmd_gen_key)

    sp = sub.add_parser("mint-token", help="Issue a signed identity token.")
    sp.add_argument("subject", help="Caller id (subject id or officer id)")
    sp.add_argument("--role", default=ROLE_SUBJECT, choices=(ROLE_SUBJECT,) + OFFICER_ROLES)
    sp.add_argument("--name", default="")
    sp.add_argument("--ttl", type=int, default=None, help="Lifetime in seconds")
    sp.set_defaults(func=cmd_mint_token)

    sp = sub.add_parser("init-db", help="Create database tables.")
    sp.set_defaults(func=cmd_init_db)

    sp = sub.add_parser("seed-subject", help="Insert a subject record.")
    sp.add_argument("subject")
    sp.add_argument("name")
    sp.add_argument("--email", default=None)
    sp.add_argument("--reference-image", default=None, help="s3://bucket/key of the reference face image")
    sp.set_defaults(func=cmd_seed_subject)

    sp = sub.add_parser("verify-audit", help="Verify the audit log hash chain.")
    sp.add_argument("log", nargs="?", type=Path, default=None, help="Audit JSONL (default: AUDIT_DIR log)")
    sp.add_argument("--state", type=Path, default=None, help="State file holding the last hash")
    sp.set_defaults(func=cmd_verify_audit)

    sp = sub.add_parser("serve", help="Run the API.")
    sp.add_argument("--host", default="0.0.0.0")
    sp.add_argument("--port", type=int, default=8000)
    sp.add_argument("--workers", type=int, default=1)
    sp.set_defaults(func=cmd_serve)

    return p


def main(argv: Optional[List[str]] = None, settings: Optional[Settings] = None) -> int:
    args = build_parser().parse_args(argv)
    if settings is None:
        from .config import settings
    return args.func(args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
