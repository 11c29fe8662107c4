from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import APIRouter, Depends, Header, Path, Query, Request, Response
from starlette.concurrency import run_in_threadpool

from intranet_auth.api.schemas import (
    AlumniCreateRequest,
    AuditEntryResponse,
    AuditListResponse,
    Envelope,
    InvitationCreateRequest,
    InvitationListResponse,
    InvitationLookupResponse,
    InvitationRedeemRequest,
    InvitationRedeemResponse,
    InvitationResponse,
    LoginRequest,
    LoginResponse,
    PasswordChangeRequest,
    SessionResponse,
    TotpCodeRequest,
    TotpLoginRequest,
    TotpSetupResponse,
    TotpStatusResponse,
    UpdateUserRoleRequest,
    UserListResponse,
    UserResponse,
)
from intranet_auth.logging import get_logger
from intranet_auth.service.rate_limit import client_ip
from intranet_auth.service.roles import BOARD_LEVEL, Principal
from intranet_auth.service.runtime import get_runtime
from intranet_auth.storage.models import Invitation, Session, User

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

SESSION_COOKIE = "session_id"


@dataclass
class SessionContext:
    session: Session
    principal: Principal

    @property
    def user_id(self) -> str:
        return self.principal.user_id


def _request_ip(request: Request) -> str:
    runtime = get_runtime()
    return client_ip(
        request.headers,
        request.client.host if request.client else None,
        trust_proxy_headers=runtime.settings.trust_proxy_headers,
    )


def _session_id_from(request: Request, header_value: Optional[str]) -> Optional[str]:
    return request.cookies.get(SESSION_COOKIE) or header_value


async def get_session_context(
    request: Request,
    session_id: Optional[str] = Header(None, convert_underscores=False),
) -> SessionContext:
    runtime = get_runtime()
    session, principal = await runtime.sessions.resolve(_session_id_from(request, session_id))
    return SessionContext(session=session, principal=principal)


async def get_board_context(
    request: Request, ctx: SessionContext = Depends(get_session_context)
) -> SessionContext:
    ctx.principal.require(BOARD_LEVEL, action=f"{request.method} {request.url.path}")
    return ctx


def _apply_session_cookie(response: Response, session: Session) -> None:
    runtime = get_runtime()
    response.set_cookie(
        SESSION_COOKIE,
        session.id,
        httponly=True,
        secure=runtime.settings.cookie_secure,
        samesite="lax",
        max_age=runtime.settings.session_lifetime_seconds,
        path="/",
    )


def _clear_session_cookie(response: Response) -> None:
    runtime = get_runtime()
    response.delete_cookie(
        SESSION_COOKIE, path="/", secure=runtime.settings.cookie_secure, samesite="lax"
    )


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        role=user.role,
        firstname=user.firstname,
        lastname=user.lastname,
        is_alumni_validated=user.is_alumni_validated,
        totp_enabled=user.totp_enabled,
        alumni_status_requested_at=user.alumni_status_requested_at,
        created_at=user.created_at,
    )


def _invitation_response(invitation: Invitation, *, include_token: bool = False) -> InvitationResponse:
    return InvitationResponse(
        id=invitation.id,
        email=invitation.email,
        role=invitation.role,
        created_by=invitation.created_by,
        created_at=invitation.created_at,
        expires_at=invitation.expires_at,
        token=invitation.token if include_token else None,
    )


# auth
@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(
    body: LoginRequest,
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    """Authenticate with email and password, plus a TOTP code when enabled.

    Without a code for a TOTP account the response carries
    ``requires_totp=True`` and a session that only ``/auth/login/totp`` accepts.

    Raises:
        401: If credentials are invalid
        429: If the IP or the account is rate limited
    """
    runtime = get_runtime()
    result = await runtime.auth.login(
        body.email,
        body.password,
        body.totp_code,
        ip=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
        previous_session_id=_session_id_from(request, session_id),
    )
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user.id,
            role=result.user.role,
            session_id=result.session.id,
            csrf_token=result.session.csrf_token,
            requires_totp=result.requires_totp,
        ),
    )


@router.post("/auth/login/totp", response_model=Envelope, tags=["auth"])
async def login_totp(
    body: TotpLoginRequest,
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    result = await runtime.auth.complete_totp(
        _session_id_from(request, session_id),
        body.code,
        ip=_request_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    _apply_session_cookie(response, result.session)
    return Envelope(
        status="ok",
        data=LoginResponse(
            user_id=result.user.id,
            role=result.user.role,
            session_id=result.session.id,
            csrf_token=result.session.csrf_token,
        ),
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    response: Response,
    session_id: Optional[str] = Header(None, convert_underscores=False),
):
    runtime = get_runtime()
    await runtime.auth.logout(_session_id_from(request, session_id))
    _clear_session_cookie(response)
    return Envelope(status="ok", data={"message": "session revoked"})


@router.get("/auth/session", response_model=Envelope, tags=["auth"])
async def current_session(ctx: SessionContext = Depends(get_session_context)):
    session = ctx.session
    return Envelope(
        status="ok",
        data=SessionResponse(
            user_id=session.user_id,
            email=session.email,
            display_name=session.display_name,
            role=session.role,
            effective_role=ctx.principal.effective_role.value,
            is_super_admin=ctx.principal.is_super_admin,
            auth_method=session.auth_method,
            csrf_token=session.csrf_token,
            last_activity=session.last_activity,
        ),
    )


@router.post("/auth/password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    ctx: SessionContext = Depends(get_session_context),
):
    """Change the current user's password and revoke their other sessions."""
    runtime = get_runtime()
    revoked = await runtime.auth.change_password(
        ctx.user_id,
        body.current_password,
        body.new_password,
        current_session_id=ctx.session.id,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data={"status": "changed", "sessions_revoked": revoked})


@router.post("/auth/totp/setup", response_model=Envelope, tags=["auth"])
async def totp_setup(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    enrollment = runtime.auth.begin_totp_enrollment(ctx.user_id)
    return Envelope(
        status="ok",
        data=TotpSetupResponse(
            secret=enrollment.secret, provisioning_uri=enrollment.provisioning_uri
        ),
    )


@router.post("/auth/totp/enable", response_model=Envelope, tags=["auth"])
async def totp_enable(
    body: TotpCodeRequest,
    request: Request,
    ctx: SessionContext = Depends(get_session_context),
):
    runtime = get_runtime()
    await runtime.auth.enable_totp(
        ctx.user_id,
        body.code,
        current_session_id=ctx.session.id,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data=TotpStatusResponse(enabled=True))


@router.post("/auth/totp/disable", response_model=Envelope, tags=["auth"])
async def totp_disable(
    body: TotpCodeRequest,
    request: Request,
    ctx: SessionContext = Depends(get_session_context),
):
    """Disable TOTP for the current user. Requires a valid current code."""
    runtime = get_runtime()
    await runtime.auth.disable_totp(
        ctx.user_id,
        body.code,
        current_session_id=ctx.session.id,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data=TotpStatusResponse(enabled=False))


@router.get("/auth/totp/status", response_model=Envelope, tags=["auth"])
async def totp_status(ctx: SessionContext = Depends(get_session_context)):
    runtime = get_runtime()
    return Envelope(
        status="ok", data=TotpStatusResponse(enabled=runtime.auth.is_totp_enabled(ctx.user_id))
    )


# invitations
@router.post("/invitations", response_model=Envelope, status_code=201, tags=["invitations"])
async def create_invitation(
    body: InvitationCreateRequest,
    request: Request,
    ctx: SessionContext = Depends(get_board_context),
):
    """Issue a single-use registration token for ``body.email``.

    The token is returned once so the caller can deliver it by email.
    """
    runtime = get_runtime()
    invitation = runtime.invitations.create_invitation(
        ctx.principal,
        body.email,
        body.role,
        body.ttl_hours,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data=_invitation_response(invitation, include_token=True))


@router.get("/invitations", response_model=Envelope, tags=["invitations"])
async def list_invitations(ctx: SessionContext = Depends(get_board_context)):
    runtime = get_runtime()
    runtime.invitations.purge_expired()
    pending = runtime.invitations.list_pending(ctx.principal)
    return Envelope(
        status="ok",
        data=InvitationListResponse(items=[_invitation_response(inv) for inv in pending]),
    )


@router.delete("/invitations/{invitation_id}", response_model=Envelope, tags=["invitations"])
async def cancel_invitation(
    request: Request,
    invitation_id: int = Path(..., ge=1),
    ctx: SessionContext = Depends(get_board_context),
):
    runtime = get_runtime()
    runtime.invitations.cancel_invitation(
        ctx.principal, invitation_id, ip_address=_request_ip(request)
    )
    return Envelope(status="ok", data={"status": "deleted"})


@router.get("/invitations/{token}", response_model=Envelope, tags=["invitations"])
async def lookup_invitation(token: str = Path(..., min_length=1, max_length=128)):
    """Check a registration token and return the invited email and role."""
    runtime = get_runtime()
    invitation = runtime.invitations.validate_token(token)
    return Envelope(
        status="ok",
        data=InvitationLookupResponse(
            email=invitation.email, role=invitation.role, expires_at=invitation.expires_at
        ),
    )


@router.post(
    "/invitations/{token}/redeem", response_model=Envelope, status_code=201, tags=["invitations"]
)
async def redeem_invitation(
    body: InvitationRedeemRequest,
    request: Request,
    token: str = Path(..., min_length=1, max_length=128),
):
    runtime = get_runtime()
    user_id = await run_in_threadpool(
        runtime.invitations.redeem_invitation,
        token,
        body.firstname,
        body.lastname,
        body.password,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data=InvitationRedeemResponse(user_id=user_id))


# users and alumni
@router.post("/users/alumni", response_model=Envelope, status_code=201, tags=["users"])
async def create_alumni_account(
    body: AlumniCreateRequest,
    request: Request,
    ctx: SessionContext = Depends(get_board_context),
):
    runtime = get_runtime()
    user = await run_in_threadpool(
        runtime.auth.create_alumni_account,
        ctx.principal,
        body.email,
        body.firstname,
        body.lastname,
        body.password,
        ip_address=_request_ip(request),
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/users/{user_id}/role", response_model=Envelope, tags=["users"])
async def update_user_role(
    body: UpdateUserRoleRequest,
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    ctx: SessionContext = Depends(get_session_context),
):
    """Change a user's role; the user's sessions are revoked."""
    runtime = get_runtime()
    user = await runtime.auth.update_user_role(
        ctx.principal, user_id, body.role, ip_address=_request_ip(request)
    )
    return Envelope(status="ok", data=_user_response(user))


@router.post("/alumni/request", response_model=Envelope, tags=["alumni"])
async def request_alumni_status(
    request: Request, ctx: SessionContext = Depends(get_session_context)
):
    runtime = get_runtime()
    user = runtime.auth.request_alumni_status(ctx.user_id, ip_address=_request_ip(request))
    return Envelope(status="ok", data=_user_response(user))


@router.post("/alumni/{user_id}/validate", response_model=Envelope, tags=["alumni"])
async def validate_alumni(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    ctx: SessionContext = Depends(get_board_context),
):
    runtime = get_runtime()
    user = runtime.auth.validate_alumni(ctx.principal, user_id, ip_address=_request_ip(request))
    return Envelope(status="ok", data=_user_response(user))


@router.get("/alumni/pending", response_model=Envelope, tags=["alumni"])
async def list_pending_alumni(ctx: SessionContext = Depends(get_board_context)):
    runtime = get_runtime()
    users = runtime.auth.list_pending_alumni(ctx.principal)
    return Envelope(status="ok", data=UserListResponse(items=[_user_response(u) for u in users]))


# audit
@router.get("/audit", response_model=Envelope, tags=["audit"])
async def list_audit_entries(
    target_type: Optional[str] = Query(None, max_length=100),
    action: Optional[str] = Query(None, max_length=100),
    user_id: Optional[str] = Query(None, max_length=64),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    ctx: SessionContext = Depends(get_board_context),
):
    runtime = get_runtime()
    records = runtime.audit.list_entries(
        ctx.principal,
        target_type=target_type,
        action=action,
        user_id=user_id,
        limit=limit,
        offset=offset,
    )
    items = [
        AuditEntryResponse(
            id=record.entry.id,
            user_id=record.entry.user_id,
            user_email=record.user.email if record.user else None,
            user_display_name=record.user.display_name if record.user else None,
            action=record.entry.action,
            target_type=record.entry.target_type,
            target_id=record.entry.target_id,
            details=record.entry.details,
            ip_address=record.entry.ip_address,
            created_at=record.entry.created_at,
        )
        for record in records
    ]
    return Envelope(status="ok", data=AuditListResponse(items=items, limit=limit, offset=offset))
