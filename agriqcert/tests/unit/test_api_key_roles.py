from __future__ import annotations

import pytest

from agriqcert.services.auth.api_keys import (
    API_KEY_PREFIX,
    generate_api_key,
    hash_api_key,
    normalize_role,
    role_in,
)


def test_generated_key_embeds_id_and_hashes_consistently() -> None:
    key_id, raw_key, key_prefix, key_hash = generate_api_key()

    assert raw_key.startswith(f"{API_KEY_PREFIX}{key_id}_")
    assert raw_key.startswith(key_prefix)
    assert key_hash == hash_api_key(raw_key)
    assert key_hash != hash_api_key(raw_key + "x")


def test_normalize_role_rejects_unknown_roles() -> None:
    assert normalize_role(" Certifier ") == "certifier"
    with pytest.raises(ValueError):
        normalize_role("auditor")


def test_admin_passes_every_role_gate() -> None:
    assert role_in(role="admin", allowed=("farmer",))
    assert role_in(role="certifier", allowed=("certifier", "qa_inspector"))
    assert not role_in(role="farmer", allowed=("certifier",))
