from __future__ import annotations

from collections.abc import Iterable
import hashlib
import secrets
from uuid import uuid4


ROLES = frozenset({"farmer", "qa_inspector", "certifier", "admin"})
ADMIN_ROLE = "admin"

API_KEY_PREFIX = "agqk_"
# Stored alongside the hash so operators can tell keys apart in listings.
_DISPLAY_PREFIX_LEN = 12


def normalize_role(role: str) -> str:
    candidate = role.strip().lower()
    if candidate not in ROLES:
        raise ValueError(f"Unsupported role: {role}")
    return candidate


def role_in(*, role: str, allowed: Iterable[str]) -> bool:
    return role == ADMIN_ROLE or role in set(allowed)


def hash_api_key(raw_key: str) -> str:
    return hashlib.sha256(raw_key.encode("utf-8")).hexdigest()


def generate_api_key(*, key_id: str | None = None) -> tuple[str, str, str, str]:
    """Return ``(key_id, raw_key, display_prefix, key_hash)``.

    The raw key reads ``agqk_<key_id>_<secret>``; only the hash is persisted.
    """
    key_id = key_id or uuid4().hex
    raw_key = f"{API_KEY_PREFIX}{key_id}_{secrets.token_urlsafe(32)}"
    return key_id, raw_key, raw_key[:_DISPLAY_PREFIX_LEN], hash_api_key(raw_key)
