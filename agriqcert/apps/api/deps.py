from __future__ import annotations

from datetime import datetime, timezone
from typing import AsyncGenerator, NoReturn
import time

from fastapi import Depends, HTTPException, Request, status
from pydantic import BaseModel
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from agriqcert.core.config import Settings, get_settings
from agriqcert.domain.models import ApiKey, User
from agriqcert.persistence.db import get_session
from agriqcert.services.audit import get_request_context, record_event
from agriqcert.services.auth.api_keys import hash_api_key, normalize_role, role_in
from agriqcert.services.container import ServiceContainer


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    async with get_session() as session:
        yield session


def get_container(request: Request) -> ServiceContainer:
    return request.app.state.container


class Principal(BaseModel):
    subject_id: str
    role: str
    api_key_id: str
    auth_method: str = "api_key"


class _PrincipalCache:
    """Short-lived key hash -> principal cache; a revoked key stops working within the TTL."""

    def __init__(self) -> None:
        self._entries: dict[str, tuple[float, Principal]] = {}

    def get(self, key_hash: str) -> Principal | None:
        entry = self._entries.get(key_hash)
        if entry is None:
            return None
        expires_at, principal = entry
        if expires_at <= time.monotonic():
            del self._entries[key_hash]
            return None
        return principal

    def put(self, key_hash: str, principal: Principal, ttl_s: int) -> None:
        if ttl_s > 0:
            self._entries[key_hash] = (time.monotonic() + ttl_s, principal)

    def clear(self) -> None:
        self._entries.clear()


_principal_cache = _PrincipalCache()


def clear_auth_cache() -> None:
    _principal_cache.clear()


def _http_error(status_code: int, code: str, message: str) -> HTTPException:
    headers = {"WWW-Authenticate": "Bearer"} if status_code == status.HTTP_401_UNAUTHORIZED else None
    return HTTPException(status_code=status_code, detail={"code": code, "message": message}, headers=headers)


async def _audit_access(
    request: Request,
    db: AsyncSession,
    *,
    event_type: str,
    outcome: str,
    actor_type: str,
    actor_id: str | None = None,
    actor_role: str | None = None,
    error_code: str | None = None,
    extra: dict[str, object] | None = None,
) -> None:
    context = get_request_context(request)
    await record_event(
        session=db,
        actor_type=actor_type,
        actor_id=actor_id,
        actor_role=actor_role,
        event_type=event_type,
        outcome=outcome,
        resource_type="auth",
        request_id=context["request_id"],
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        metadata={"path": request.url.path, "method": request.method, **(extra or {})},
        error_code=error_code,
        commit=True,
    )


async def _reject(
    request: Request,
    db: AsyncSession,
    message: str,
    *,
    actor_type: str = "anonymous",
    actor_id: str | None = None,
    status_code: int = status.HTTP_401_UNAUTHORIZED,
    code: str = "AUTH_UNAUTHORIZED",
) -> NoReturn:
    await _audit_access(
        request,
        db,
        event_type="auth.access.failure",
        outcome="failure",
        actor_type=actor_type,
        actor_id=actor_id,
        error_code=code,
        extra={"reason": message},
    )
    raise _http_error(status_code, code, message)


def _bearer_token(request: Request, settings: Settings) -> str | None:
    header_value = request.headers.get(settings.auth_api_key_header)
    if not header_value:
        return None
    scheme, _, token = header_value.partition(" ")
    if scheme.lower() != "bearer" or not token.strip() or " " in token.strip():
        return ""
    return token.strip()


def _dev_principal(request: Request) -> Principal:
    # X-User-Id / X-Role are honoured only with AUTH_DEV_BYPASS=true.
    user_id = request.headers.get("X-User-Id")
    if not user_id:
        raise _http_error(
            status.HTTP_401_UNAUTHORIZED, "AUTH_UNAUTHORIZED", "X-User-Id header is required in dev bypass mode"
        )
    try:
        role = normalize_role(request.headers.get("X-Role", "admin"))
    except ValueError as exc:
        raise _http_error(status.HTTP_400_BAD_REQUEST, "AUTH_INVALID_ROLE", str(exc)) from exc
    return Principal(subject_id=user_id, role=role, api_key_id="dev-bypass", auth_method="dev_bypass")


async def _principal_for_key(request: Request, db: AsyncSession, token: str, settings: Settings) -> Principal:
    key_hash = hash_api_key(token)
    cached = _principal_cache.get(key_hash)
    if cached is not None:
        return cached
    try:
        row = (
            await db.execute(
                select(ApiKey, User).join(User, ApiKey.user_id == User.id).where(ApiKey.key_hash == key_hash)
            )
        ).first()
    except SQLAlchemyError as exc:
        raise _http_error(
            status.HTTP_503_SERVICE_UNAVAILABLE, "AUTH_UNAVAILABLE", "Authentication unavailable"
        ) from exc
    if row is None:
        await _reject(request, db, "Invalid API key")
    api_key, user = row
    if api_key.revoked_at is not None or not user.is_active:
        await _reject(request, db, "API key is revoked or inactive", actor_type="api_key", actor_id=api_key.id)
    now = datetime.now(timezone.utc)
    expires_at = api_key.expires_at
    if expires_at is not None and expires_at.replace(tzinfo=expires_at.tzinfo or timezone.utc) <= now:
        await _reject(request, db, "API key expired", actor_type="api_key", actor_id=api_key.id)
    try:
        role = normalize_role(user.role)
    except ValueError as exc:
        await _reject(
            request,
            db,
            str(exc),
            actor_type="api_key",
            actor_id=api_key.id,
            status_code=status.HTTP_403_FORBIDDEN,
            code="AUTH_FORBIDDEN",
        )

    principal = Principal(subject_id=user.id, role=role, api_key_id=api_key.id)
    _principal_cache.put(key_hash, principal, settings.auth_cache_ttl_s)
    # last_used_at rides on the audit commit below.
    await db.execute(update(ApiKey).where(ApiKey.id == api_key.id).values(last_used_at=now))
    await _audit_access(
        request,
        db,
        event_type="auth.access.success",
        outcome="success",
        actor_type="api_key",
        actor_id=api_key.id,
        actor_role=role,
        extra={"user_id": user.id},
    )
    return principal


async def get_current_principal(
    request: Request,
    db: AsyncSession = Depends(get_db),
) -> Principal:
    settings = get_settings()
    token = _bearer_token(request, settings)
    if token == "":
        await _reject(request, db, "Missing or invalid bearer token")
    if settings.auth_enabled and token:
        return await _principal_for_key(request, db, token, settings)
    if settings.auth_dev_bypass:
        return _dev_principal(request)
    if settings.auth_enabled:
        await _reject(request, db, "Missing API key")
    await _reject(request, db, "Authentication disabled; set AUTH_DEV_BYPASS=true for dev access")


def require_roles(*roles: str):
    """Route dependency admitting the listed roles plus admin."""

    async def _dependency(
        request: Request,
        principal: Principal = Depends(get_current_principal),
        db: AsyncSession = Depends(get_db),
    ) -> Principal:
        if role_in(role=principal.role, allowed=roles):
            return principal
        await _audit_access(
            request,
            db,
            event_type="rbac.forbidden",
            outcome="failure",
            actor_type="user",
            actor_id=principal.subject_id,
            actor_role=principal.role,
            error_code="AUTH_FORBIDDEN",
            extra={"allowed_roles": list(roles)},
        )
        raise _http_error(status.HTTP_403_FORBIDDEN, "AUTH_FORBIDDEN", "Insufficient role for this operation")

    return _dependency
