#!/usr/bin/env python3
"""Create the first ADMIN account, or promote an existing user to ADMIN.

    ADMIN_EMAIL=owner@shop.example ADMIN_PASSWORD='S3cure!pass' python scripts/bootstrap_admin.py
    python scripts/bootstrap_admin.py --email owner@shop.example --password 'S3cure!pass'

The regular app settings (DATABASE_URL, SESSION_SECRET, JWT_SECRET,
APP_BASE_URL) must be present. Promoting a user revokes their sessions so the
next sign-in carries the new role.
"""
from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(ROOT))


def bootstrap_admin(email: str, password: str, name: str, dry_run: bool = False) -> dict:
    """Returns {"user_id", "email", "status"}; status is one of created,
    promoted, already_admin or dry_run."""
    # settings are read on first runtime access
    from storegate.service.auth import register_user
    from storegate.service.runtime import get_runtime
    from storegate.storage.models import Role

    runtime = get_runtime()
    user = runtime.store.get_user_by_email(email)
    result = {"user_id": user.id if user else None, "email": email}

    if user and user.role == Role.ADMIN:
        return {**result, "status": "already_admin"}
    if dry_run:
        return {**result, "status": "dry_run"}
    if user:
        runtime.store.update_user(user.id, role=Role.ADMIN)
        runtime.store.delete_user_sessions(user.id)
        return {**result, "status": "promoted"}

    created = register_user(
        runtime.store,
        runtime.hasher,
        name=name,
        email=email,
        password=password,
        role=Role.ADMIN,
    )
    return {**result, "user_id": created.id, "status": "created"}


_MESSAGES = {
    "created": "Created admin {email} (id: {user_id})",
    "promoted": "Promoted {email} to admin (id: {user_id}); existing sessions revoked",
    "already_admin": "{email} is already an admin (id: {user_id}); nothing to do",
    "dry_run": "[DRY RUN] would make {email} an admin",
}


def main() -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("--email", default=os.environ.get("ADMIN_EMAIL"))
    parser.add_argument("--password", default=os.environ.get("ADMIN_PASSWORD"))
    parser.add_argument("--name", default="Administrator")
    parser.add_argument("--dry-run", action="store_true")
    args = parser.parse_args()

    if not args.email or not args.password:
        print("Error: both --email/ADMIN_EMAIL and --password/ADMIN_PASSWORD are required")
        return 1

    from storegate.service.validation import validate_email, validate_password_strength

    try:
        email = validate_email(args.email)
        validate_password_strength(args.password)
    except ValueError as exc:
        print(f"Error: {exc}")
        return 1

    try:
        result = bootstrap_admin(email, args.password, args.name, args.dry_run)
    except Exception as exc:
        print(f"Error: {exc}")
        return 1

    print(_MESSAGES[result["status"]].format(**result))
    return 0


if __name__ == "__main__":
    sys.exit(main())
