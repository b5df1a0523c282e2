#!/usr/bin/env python3
"""Operator commands for Tollgate credentials.

Usage:
    # Create an active credential:
    python scripts/manage_credentials.py create --email ops@example.com --password 'S3cure-pass'

    # Clear a lockout after verifying the account holder out of band:
    python scripts/manage_credentials.py unlock --email ops@example.com

    # Log a credential out of every session:
    python scripts/manage_credentials.py revoke-sessions --email ops@example.com

    # Block further logins:
    python scripts/manage_credentials.py deactivate --email ops@example.com

Every command accepts --dry-run to show what would change.

Environment Variables:
    TOLLGATE_ADMIN_PASSWORD: Password for `create` when --password is omitted
    DATABASE_URL / TOLLGATE_STORE: Store selection, as for the API server
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

# Add project root to path for imports
ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def _require_credential(runtime, email: str):
    credential = runtime.directory.find_by_email(email)
    if credential is None:
        raise LookupError(f"no credential for {email}")
    return credential


def create_credential(email: str, password: str, dry_run: bool = False) -> dict:
    """Create an active credential.

    Returns:
        dict with credential_id, email, and status ('created', 'exists' or 'dry_run')
    """
    # Import here to avoid loading config before env vars are set
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    existing = runtime.directory.find_by_email(email)
    if existing:
        print(f"Credential {email} already exists (id: {existing.id})")
        return {"credential_id": existing.id, "email": email, "status": "exists"}
    if dry_run:
        print(f"[DRY RUN] Would create credential: {email}")
        return {"credential_id": None, "email": email, "status": "dry_run"}

    credential = runtime.directory.create(email, password)
    print(f"Created credential: {email} (id: {credential.id})")
    return {"credential_id": credential.id, "email": email, "status": "created"}


def unlock_credential(email: str, dry_run: bool = False) -> dict:
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    credential = _require_credential(runtime, email)
    state = runtime.lockout.check_locked(credential.id)
    if not state.locked:
        print(f"Credential {email} is not locked")
        return {"credential_id": credential.id, "status": "not_locked"}
    if dry_run:
        print(f"[DRY RUN] Would unlock {email} ({state.minutes_remaining} minutes remaining)")
        return {"credential_id": credential.id, "status": "dry_run"}

    runtime.lockout.unlock(credential.id)
    print(f"Unlocked {email}")
    return {"credential_id": credential.id, "status": "unlocked"}


def revoke_sessions(email: str, dry_run: bool = False) -> dict:
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    credential = _require_credential(runtime, email)
    if dry_run:
        active = runtime.sessions.list_for_credential(credential.id)
        print(f"[DRY RUN] Would revoke {len(active)} session(s) for {email}")
        return {"credential_id": credential.id, "status": "dry_run", "revoked": 0}

    revoked = runtime.sessions.revoke_all_for_credential(credential.id)
    print(f"Revoked {revoked} session(s) for {email}")
    return {"credential_id": credential.id, "status": "revoked", "revoked": revoked}


def deactivate_credential(email: str, dry_run: bool = False) -> dict:
    from tollgate.service.runtime import get_runtime

    runtime = get_runtime()
    credential = _require_credential(runtime, email)
    if not credential.is_active:
        print(f"Credential {email} is already inactive")
        return {"credential_id": credential.id, "status": "inactive"}
    if dry_run:
        print(f"[DRY RUN] Would deactivate {email} and revoke its sessions")
        return {"credential_id": credential.id, "status": "dry_run"}

    runtime.store.set_credential_active(credential.id, False)
    revoked = runtime.sessions.revoke_all_for_credential(credential.id)
    print(f"Deactivated {email}; revoked {revoked} session(s)")
    return {"credential_id": credential.id, "status": "deactivated", "revoked": revoked}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Manage Tollgate credentials",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Show what would be done without making changes",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    create = commands.add_parser("create", help="Create an active credential")
    create.add_argument("--email", required=True)
    create.add_argument(
        "--password",
        default=os.environ.get("TOLLGATE_ADMIN_PASSWORD"),
        help="Password (or set TOLLGATE_ADMIN_PASSWORD env var)",
    )

    for name, help_text in (
        ("unlock", "Clear an account lockout"),
        ("revoke-sessions", "Log a credential out of every session"),
        ("deactivate", "Block logins and revoke every session"),
    ):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("--email", required=True)

    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    email = args.email.strip().lower()

    if args.command == "create" and not args.password:
        print("Error: --password or TOLLGATE_ADMIN_PASSWORD environment variable required")
        return 1

    if not os.environ.get("DATABASE_URL") and not os.environ.get("TOLLGATE_STORE"):
        os.environ["PERSIST_MEMORY_STORE"] = "true"
        print("Note: Using the file-backed memory store (set DATABASE_URL for Postgres)")

    try:
        if args.command == "create":
            create_credential(email, args.password, args.dry_run)
        elif args.command == "unlock":
            unlock_credential(email, args.dry_run)
        elif args.command == "revoke-sessions":
            revoke_sessions(email, args.dry_run)
        elif args.command == "deactivate":
            deactivate_credential(email, args.dry_run)
    except (LookupError, ValueError) as e:
        print(f"Error: {e}")
        return 1
    return 0


if __name__ == "__main__":
    sys.exit(main())
