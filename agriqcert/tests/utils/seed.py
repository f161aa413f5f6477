from __future__ import annotations

from datetime import datetime, timezone
from uuid import uuid4

from agriqcert.domain.models import ApiKey, Batch, Inspection, User
from agriqcert.persistence.db import SessionLocal
from agriqcert.services.auth.api_keys import generate_api_key, normalize_role


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


async def create_batch(
    *,
    batch_id: str | None = None,
    farmer_id: str = "farmer-1",
    product_name: str = "Basmati Rice",
) -> str:
    resolved_id = batch_id or f"batch-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        session.add(
            Batch(
                id=resolved_id,
                farmer_id=farmer_id,
                farmer_name="Asha Farmer",
                farmer_organization="Green Valley Co-op",
                product_type="grain",
                product_name=product_name,
                quantity=1200.0,
                unit="kg",
                harvest_date=datetime(2026, 4, 12, tzinfo=timezone.utc),
                location_json={"region": "Punjab", "country": "IN"},
                status="inspected",
            )
        )
        await session.commit()
    return resolved_id


async def create_inspection(
    batch_id: str,
    *,
    status: str = "completed",
    outcome: str | None = "pass",
    inspector_id: str = "inspector-1",
) -> str:
    inspection_id = f"insp-{uuid4().hex[:8]}"
    async with SessionLocal() as session:
        session.add(
            Inspection(
                id=inspection_id,
                batch_id=batch_id,
                inspector_id=inspector_id,
                inspector_name="Ravi Inspector",
                status=status,
                outcome_classification=outcome,
                quality_grade="A",
                overall_score=92.5,
                notes="Moisture within tolerance",
                completed_at=_utc_now() if status == "completed" else None,
            )
        )
        await session.commit()
    return inspection_id


async def create_test_api_key(
    *,
    role: str,
    name: str = "test-key",
    user_active: bool = True,
    key_revoked: bool = False,
    key_expires_at: datetime | None = None,
) -> tuple[str, dict[str, str], str, str]:
    normalized_role = normalize_role(role)
    user_id = uuid4().hex
    key_id, raw_key, key_prefix, key_hash = generate_api_key()
    async with SessionLocal() as session:
        session.add(
            User(
                id=user_id,
                name=f"{normalized_role} user",
                email=None,
                role=normalized_role,
                is_active=user_active,
            )
        )
        # Flush the user insert before the API key to satisfy FK constraints.
        await session.flush()
        session.add(
            ApiKey(
                id=key_id,
                user_id=user_id,
                key_prefix=key_prefix,
                key_hash=key_hash,
                name=name,
                expires_at=key_expires_at,
                revoked_at=_utc_now() if key_revoked else None,
            )
        )
        await session.commit()
    headers = {"Authorization": f"Bearer {raw_key}"}
    return raw_key, headers, user_id, key_id


def dev_headers(user_id: str, role: str) -> dict[str, str]:
    return {"X-User-Id": user_id, "X-Role": role}
