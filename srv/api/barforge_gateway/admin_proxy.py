from __future__ import annotations

from typing import Any, Optional

from fastapi import APIRouter, HTTPException, Query, Request
from fastapi.responses import Response
from pydantic import BaseModel, Field

from . import auth
from .registry import RegistryError, map_upstream_status


admin_router = APIRouter(prefix="/api/admin")


class RejectRequest(BaseModel):
    reason: str = Field(min_length=1, max_length=2000)


def _forward(request: Request, method: str, path: str, json_body: Any = None) -> Response:
    gateway = auth.get_gateway(request)
    login, token = auth.require_admin(gateway, request)
    try:
        upstream = gateway.registry.forward(method, path, token, json_body=json_body)
    except RegistryError as exc:
        gateway.audit.record(
            request,
            event_type="admin.proxy.error",
            result="error",
            actor_login=login,
            details={"reason": str(exc), "path": path},
        )
        raise HTTPException(
            status_code=502,
            detail={"code": "bad_gateway", "message": "Registry unavailable", "details": {}},
        )
    if upstream.ok:
        return Response(content=upstream.content, status_code=upstream.status_code, media_type=upstream.content_type)
    status_code = map_upstream_status(upstream.status_code, has_body=bool(upstream.content))
    if status_code == 502:
        raise HTTPException(
            status_code=502,
            detail={"code": "bad_gateway", "message": "Registry request failed", "details": {"upstream_status": upstream.status_code}},
        )
    return Response(content=upstream.content, status_code=status_code, media_type=upstream.content_type)


@admin_router.get("/status")
def admin_status(request: Request):
    gateway = auth.get_gateway(request)
    login, _ = auth.require_admin(gateway, request)
    return {"status": "ok", "login": login, "auth": auth.auth_runtime_status(gateway)}


@admin_router.get("/audit")
def admin_audit(
    request: Request,
    event_prefix: Optional[str] = Query(default="auth."),
    limit: int = Query(default=50, ge=1, le=500),
):
    gateway = auth.get_gateway(request)
    auth.require_admin(gateway, request)
    return {"items": gateway.audit.recent(event_prefix=event_prefix or "", limit=limit)}


@admin_router.get("/stats")
def admin_stats(request: Request):
    return _forward(request, "GET", "admin/stats")


@admin_router.get("/submissions")
def admin_submissions(request: Request):
    return _forward(request, "GET", "admin/submissions")


@admin_router.post("/submissions/{submission_id}/approve")
def admin_submission_approve(request: Request, submission_id: int):
    return _forward(request, "POST", f"admin/submissions/{submission_id}/approve")


@admin_router.post("/submissions/{submission_id}/reject")
def admin_submission_reject(request: Request, submission_id: int, payload: RejectRequest):
    return _forward(request, "POST", f"admin/submissions/{submission_id}/reject", json_body=payload.model_dump())


@admin_router.post("/users/{user_id}/verify")
def admin_user_verify(request: Request, user_id: int):
    return _forward(request, "POST", f"admin/users/{user_id}/verify")
