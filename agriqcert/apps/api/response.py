from __future__ import annotations

from typing import Any, Generic, TypeVar
from uuid import uuid4

from fastapi import Request
from pydantic import BaseModel


API_VERSION = "v1"
REQUEST_ID_HEADER = "X-Request-Id"

DataT = TypeVar("DataT")


class ResponseMeta(BaseModel):
    request_id: str
    api_version: str = API_VERSION


class ErrorDetail(BaseModel):
    code: str
    message: str
    details: dict[str, Any] | None = None


class SuccessEnvelope(BaseModel, Generic[DataT]):
    data: DataT
    meta: ResponseMeta


class ErrorEnvelope(BaseModel):
    error: ErrorDetail
    meta: ResponseMeta


def get_request_id(request: Request) -> str:
    """Return the request id, adopting the caller's header or minting one."""
    cached = getattr(request.state, "request_id", None)
    if not cached:
        cached = request.headers.get(REQUEST_ID_HEADER) or uuid4().hex
        request.state.request_id = cached
    return cached


def is_versioned_request(request: Request) -> bool:
    return request.url.path == f"/{API_VERSION}" or request.url.path.startswith(f"/{API_VERSION}/")


def _meta(request: Request) -> dict[str, Any]:
    return ResponseMeta(request_id=get_request_id(request)).model_dump()


def success_response(*, request: Request, data: Any) -> Any:
    # Unversioned aliases keep their bare payloads.
    if is_versioned_request(request):
        return {"data": data, "meta": _meta(request)}
    return data


def error_response(
    *,
    request: Request,
    code: str,
    message: str,
    details: dict[str, Any] | None = None,
) -> dict[str, Any]:
    detail = ErrorDetail(code=code, message=message, details=details)
    return {"error": detail.model_dump(exclude_none=True), "meta": _meta(request)}
