"""
api/routes/v1/auth.py -- Session, self-service account and reactivation endpoints.

Routes:
  POST /api/v1/auth/login                      -- tokens + profile + permissions
  POST /api/v1/auth/refresh                    -- new access token (refresh token in body)
  POST /api/v1/auth/logout                     -- delete the session row (idempotent)
  GET  /api/v1/auth/profile                    -- current user (requires auth)
  PUT  /api/v1/auth/change-password            -- 30-day cooldown
  PUT  /api/v1/auth/update-profile             -- 30-day cooldown, unique username/email
  POST /api/v1/auth/forgot-password            -- uniform messaging
  POST /api/v1/auth/reset-password             -- token + new password
  POST /api/v1/auth/send-reactivation-code     -- password re-check, emails a 6-digit code
  POST /api/v1/auth/verify-reactivation-code   -- code + reason -> pending request
  POST /api/v1/auth/request-reactivation       -- reason only, no code
  GET  /api/v1/auth/reactivation-requests      -- pending requests (head admin)
  PUT  /api/v1/auth/reactivation-requests/{id} -- approve / reject (head admin)

Security:
  [H2] POST /login is rate-limited per IP by slowapi, on top of the failed-
       attempt lockout inside SessionManager.
  [C1] SessionManager.login() runs bcrypt on every path; never inline the
       lookup + verify here.
  [M5] Cache-Control: no-store on login and on every 401.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse

from api.audit_route import AuditedResponse, AuditedRoute, audited
from api.limiter import limiter
from api.models import (
    ChangePasswordRequest,
    CodeSentResponse,
    ForgotPasswordRequest,
    ForgotPasswordResponse,
    LoginRequest,
    LoginResponse,
    LogoutRequest,
    MessageResponse,
    ProfileResponse,
    ReactivationRequestCreate,
    ReactivationRequestList,
    ReactivationRequestResponse,
    ReactivationSubmitted,
    RefreshRequest,
    RefreshResponse,
    ResetPasswordRequest,
    ReviewRequest,
    ReviewResponse,
    SendReactivationCodeRequest,
    UpdateProfileRequest,
    UserResponse,
    VerifyReactivationCodeRequest,
)
from auth.dependencies import get_identity, require_admin
from auth.lifecycle import AccountLifecycle
from auth.models import Identity
from auth.sessions import SessionManager
from core.config import get_settings

router = APIRouter(route_class=AuditedRoute)

_settings = get_settings()


def _client_ip(request: Request) -> str | None:
    return request.client.host if request.client else None


# ---------------------------------------------------------------------------
# Sessions
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)  # [H2] must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=LoginResponse)
@audited("login", "auth")
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with username-or-email and password.

    Unknown user and wrong password both yield INVALID_CREDENTIALS. A correct
    password on a deactivated account yields ACCOUNT_DEACTIVATED with
    identity_verified=true so the UI can offer reactivation.
    """
    sessions: SessionManager = request.app.state.session_manager
    result = sessions.login(
        body.username,
        body.password,
        device_info=body.device_info or request.headers.get("user-agent"),
        ip=_client_ip(request),
    )
    resp = AuditedResponse(
        LoginResponse(
            access_token=result.access_token,
            refresh_token=result.refresh_token,
            expires_in=result.expires_in,
            user=UserResponse.from_user(result.identity.user),
            permissions=result.identity.permissions,
        ).model_dump(mode="json")
    )
    resp.headers["Cache-Control"] = "no-store"  # [M5]
    return resp


@router.post("/auth/refresh", response_model=RefreshResponse)
def refresh(request: Request, body: RefreshRequest) -> RefreshResponse:
    sessions: SessionManager = request.app.state.session_manager
    access_token, expires_in = sessions.refresh(body.refresh_token)
    return RefreshResponse(access_token=access_token, expires_in=expires_in)


@router.post("/auth/logout", response_model=MessageResponse)
@audited("logout", "auth")
def logout(
    request: Request,
    body: LogoutRequest,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    sessions: SessionManager = request.app.state.session_manager
    sessions.logout(identity.user_id, body.refresh_token)
    return MessageResponse(message="Logged out successfully.")


# ---------------------------------------------------------------------------
# Authenticated self-service
# ---------------------------------------------------------------------------


@router.get("/auth/profile", response_model=ProfileResponse)
def profile(identity: Identity = Depends(get_identity)) -> ProfileResponse:
    return ProfileResponse(user=UserResponse.from_user(identity.user), permissions=identity.permissions)


@router.put("/auth/change-password", response_model=MessageResponse)
@audited("change_password", "users")
def change_password(
    request: Request,
    body: ChangePasswordRequest,
    identity: Identity = Depends(get_identity),
) -> MessageResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    lifecycle.change_password(identity, body.current_password, body.new_password)
    return MessageResponse(message="Password changed successfully.")


@router.put("/auth/update-profile", response_model=ProfileResponse)
@audited("update_profile", "users")
def update_profile(
    request: Request,
    body: UpdateProfileRequest,
    identity: Identity = Depends(get_identity),
) -> ProfileResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    user = lifecycle.update_profile(identity, **body.model_dump())
    return ProfileResponse(user=UserResponse.from_user(user), permissions=identity.permissions)


# ---------------------------------------------------------------------------
# Password reset (public)
# ---------------------------------------------------------------------------


@router.post("/auth/forgot-password", response_model=ForgotPasswordResponse)
@audited("request_password_reset", "auth")
def forgot_password(request: Request, body: ForgotPasswordRequest) -> JSONResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    outcome = lifecycle.request_password_reset(body.identifier)
    return JSONResponse(
        status_code=200 if outcome.success else 400,
        content=ForgotPasswordResponse(success=outcome.success, message=outcome.message).model_dump(),
    )


@router.post("/auth/reset-password", response_model=MessageResponse)
@audited("update_password_via_reset", "auth")
def reset_password(request: Request, body: ResetPasswordRequest) -> MessageResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    lifecycle.reset_password(body.token, body.new_password)
    return MessageResponse(message="Password has been reset. You can now log in with your new password.")


# ---------------------------------------------------------------------------
# Reactivation (public, identity re-verified by password)
# ---------------------------------------------------------------------------


@router.post("/auth/send-reactivation-code", response_model=CodeSentResponse)
@audited("request_reactivation_code", "auth")
def send_reactivation_code(request: Request, body: SendReactivationCodeRequest) -> CodeSentResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    dispatch = lifecycle.send_reactivation_code(body.username, body.password)
    return CodeSentResponse(
        message="Verification code sent to your registered email address.",
        email_hint=dispatch.email_hint,
        expires_in_minutes=dispatch.expires_in_minutes,
    )


@router.post("/auth/verify-reactivation-code", response_model=ReactivationSubmitted, status_code=201)
@audited("request_reactivation", "reactivation_requests")
def verify_reactivation_code(request: Request, body: VerifyReactivationCodeRequest) -> ReactivationSubmitted:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    request_id = lifecycle.verify_reactivation_code(body.username, body.password, body.code, body.reason)
    return ReactivationSubmitted(
        message="Your reactivation request has been submitted for administrator review.",
        request_id=request_id,
    )


@router.post("/auth/request-reactivation", response_model=ReactivationSubmitted, status_code=201)
@audited("request_reactivation", "reactivation_requests")
def request_reactivation(request: Request, body: ReactivationRequestCreate) -> ReactivationSubmitted:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    request_id = lifecycle.request_reactivation(body.username, body.password, body.reason)
    return ReactivationSubmitted(
        message="Your reactivation request has been submitted for administrator review.",
        request_id=request_id,
    )


# ---------------------------------------------------------------------------
# Reactivation review (head admin)
# ---------------------------------------------------------------------------


@router.get("/auth/reactivation-requests", response_model=ReactivationRequestList)
@audited("view_reactivation_requests", "reactivation_requests")
def list_reactivation_requests(
    request: Request,
    identity: Identity = Depends(require_admin),
) -> ReactivationRequestList:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    return ReactivationRequestList(
        requests=[ReactivationRequestResponse.from_request(r) for r in lifecycle.list_pending()]
    )


@router.put("/auth/reactivation-requests/{request_id}", response_model=ReviewResponse)
@audited("review_reactivation_request", "reactivation_requests", "request_id")
def review_reactivation_request(
    request: Request,
    request_id: int,
    body: ReviewRequest,
    identity: Identity = Depends(require_admin),
) -> AuditedResponse:
    lifecycle: AccountLifecycle = request.app.state.lifecycle
    approve = body.action == "approve"
    reviewed = lifecycle.review(request_id, approve, identity, body.notes)
    return AuditedResponse(
        ReviewResponse(
            message=f"Reactivation request {'approved' if approve else 'rejected'}.",
            request=ReactivationRequestResponse.from_request(reviewed),
        ).model_dump(mode="json"),
        audit_action=f"{body.action}_reactivation_request",
    )
