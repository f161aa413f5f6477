from __future__ import annotations

import argparse
import asyncio
from datetime import datetime, timedelta, timezone
import sys
from uuid import uuid4

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.domain.models import ApiKey, User
from agriqcert.persistence.db import SessionLocal
from agriqcert.services.audit import record_event
from agriqcert.services.auth.api_keys import ROLES, generate_api_key, normalize_role


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Issue an API key for a farmer, inspector, certifier or admin")
    parser.add_argument("--role", required=True, choices=sorted(ROLES))
    parser.add_argument("--name", required=True, help="Key label shown in the audit trail")
    parser.add_argument("--user-id", default=None, help="Attach to an existing user instead of creating one")
    parser.add_argument("--user-name", default=None)
    parser.add_argument("--email", default=None)
    parser.add_argument("--expires-days", type=int, default=None, help="Key lifetime; omit for no expiry")
    return parser


async def _upsert_user(session: AsyncSession, args: argparse.Namespace, role: str) -> User:
    user_id = args.user_id or uuid4().hex
    user = await session.get(User, user_id)
    if user is None:
        user = User(id=user_id, name=args.user_name or user_id, email=args.email, role=role, is_active=True)
        session.add(user)
    else:
        user.role = role
        user.email = args.email or user.email
    # The key row references users.id.
    await session.flush()
    return user


async def _create_key(args: argparse.Namespace) -> int:
    role = normalize_role(args.role)
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    expires_at = None
    if args.expires_days is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(days=args.expires_days)

    async with SessionLocal() as session:
        user = await _upsert_user(session, args, role)
        session.add(
            ApiKey(
                id=key_id,
                user_id=user.id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=args.name,
                expires_at=expires_at,
            )
        )
        await record_event(
            session=session,
            actor_type="system",
            actor_id="create_api_key",
            actor_role=role,
            event_type="auth.api_key.created",
            outcome="success",
            resource_type="api_key",
            resource_id=key_id,
            metadata={"user_id": user.id, "key_prefix": key_prefix, "key_name": args.name},
            commit=True,
            best_effort=False,
        )

    print(f"key_id={key_id} user_id={user.id} role={role} prefix={key_prefix}")
    if expires_at is not None:
        print(f"expires_at={expires_at.isoformat()}")
    # The raw key is shown once; only its hash is stored.
    print(raw_key)
    return 0


def main() -> int:
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_create_key(args))
    except (SQLAlchemyError, ValueError) as exc:
        print(f"create_api_key failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
