"""
api/audit_route.py -- APIRoute subclass that records audited endpoints.

Usage:
    router = APIRouter(route_class=AuditedRoute)

    @router.put("/users/{user_id}/deactivate")
    @audited("deactivate_user", "users")
    def deactivate(...): ...

@audited must sit BELOW @router.<method> so the marker is on the function
the router registers. Endpoints without it are not recorded.

For audited endpoints the route handler:
  1. Runs the normal FastAPI handler.
  2. Turns PortalError / HTTPException / validation errors / anything else
     into the error envelope itself, so the entry records the real status.
  3. Honours an AuditedResponse returned by the handler: audit_action
     overrides the declared action (approve vs. reject), and
     AuditOutcome.COMPLETED_SUPPRESS_LOGGING skips the entry.
  4. Attaches a background task that hands an AuditEvent to the recorder
     after the response has been sent.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from fastapi import HTTPException, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.routing import APIRoute
from starlette.background import BackgroundTasks

from api.errors import (
    http_error_response,
    portal_error_response,
    unexpected_error_response,
    validation_error_response,
)
from audit.models import AuditEvent, AuditOutcome
from core.errors import PortalError

logger = logging.getLogger("coopportal.api.audit")


@dataclass(frozen=True)
class AuditSpec:
    action: str
    resource: str | None = None
    resource_id_param: str | None = None


def audited(action: str, resource: str | None = None, resource_id_param: str | None = None) -> Callable:
    def decorate(func: Callable) -> Callable:
        func.__audit__ = AuditSpec(action, resource, resource_id_param)
        return func

    return decorate


class AuditedResponse(JSONResponse):
    """JSONResponse that tells the audit route how to log the call."""

    def __init__(
        self,
        content: Any,
        status_code: int = 200,
        *,
        audit_action: str | None = None,
        audit_outcome: AuditOutcome = AuditOutcome.COMPLETED,
        **kwargs,
    ) -> None:
        super().__init__(content, status_code=status_code, **kwargs)
        self.audit_action = audit_action
        self.audit_outcome = audit_outcome


def _json_or_empty(raw: bytes | None) -> dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


async def _build_event(request: Request, response: Response, spec: AuditSpec) -> AuditEvent:
    body: dict[str, Any] = {}
    if request.method in ("POST", "PUT", "PATCH", "DELETE"):
        body = _json_or_empty(await request.body())
    response_payload: dict[str, Any] = {}
    if isinstance(response, JSONResponse):
        response_payload = _json_or_empty(response.body)

    path_params = dict(request.path_params)
    if spec.resource_id_param and spec.resource_id_param in path_params:
        resource_id = path_params[spec.resource_id_param]
    elif path_params:
        resource_id = next(iter(path_params.values()))
    else:
        resource_id = body.get("id")

    identity = getattr(request.state, "identity", None)
    return AuditEvent(
        action=getattr(response, "audit_action", None) or spec.action,
        resource=spec.resource,
        method=request.method,
        path=request.url.path,
        status_code=response.status_code,
        user_id=identity.user_id if identity else None,
        branch_id=identity.branch_id if identity else None,
        resource_id=str(resource_id) if resource_id is not None else None,
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
        body=body,
        path_params=path_params,
        query=dict(request.query_params),
        response=response_payload,
    )


class AuditedRoute(APIRoute):
    def get_route_handler(self) -> Callable:
        original = super().get_route_handler()
        spec: AuditSpec | None = getattr(self.endpoint, "__audit__", None)
        if spec is None:
            return original

        async def audited_handler(request: Request) -> Response:
            try:
                response = await original(request)
            except PortalError as exc:
                response = portal_error_response(exc)
            except HTTPException as exc:
                response = http_error_response(exc)
            except RequestValidationError as exc:
                response = validation_error_response(exc)
            except Exception as exc:
                response = unexpected_error_response(request, exc)

            if getattr(response, "audit_outcome", AuditOutcome.COMPLETED) is AuditOutcome.COMPLETED_SUPPRESS_LOGGING:
                return response

            event = await _build_event(request, response, spec)
            tasks = BackgroundTasks()
            if response.background is not None:
                tasks.add_task(response.background)
            tasks.add_task(request.app.state.audit_recorder.submit, event)
            response.background = tasks
            return response

        return audited_handler
