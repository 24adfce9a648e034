"""
认证 API：凭据检查、登录（单会话）、登出、校验 token、当前用户。

同一用户只允许一个有效会话：已有会话时，不带 force 的登录只返回
requires_confirmation + existing_sessions；带 force 登录会使旧会话立即失效并断开其 WebSocket。
"""

from fastapi import APIRouter, Depends, HTTPException, Request

from vitachat.api.deps import Services, bearer_token, client_ip, get_current_claims, get_services
from vitachat.api.rate_limit import AUTH_RATE_LIMIT, limiter
from vitachat.api.schemas import CheckResponse, CredentialsRequest, LoginRequest, LoginResponse
from vitachat.auth.errors import AuthenticationError
from vitachat.auth.token import TokenClaims
from vitachat.log import get_logger
from vitachat.observability.metrics import metrics

logger = get_logger(__name__)

router = APIRouter(prefix="/api/auth", tags=["auth"])

INVALID_CREDENTIALS_MESSAGE = "Invalid email or password"


def _user_item(user: dict) -> dict:
    return {"id": user["id"], "email": user["email"], "created_at": user.get("created_at")}


def _lookup_user(services: Services, user_id: str) -> dict:
    try:
        user = services.users.find_by_id(user_id)
    except Exception as e:
        logger.error("[auth] user lookup failed for %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Internal server error")
    if not user:
        raise HTTPException(status_code=404, detail="User not found")
    return user


@router.post("/check", response_model=CheckResponse)
@limiter.limit(AUTH_RATE_LIMIT)
def check(request: Request, body: CredentialsRequest, services: Services = Depends(get_services)) -> CheckResponse:
    """校验凭据并返回该用户现有会话，不做任何修改。"""
    try:
        result = services.sessions.check_credentials(body.email, body.password)
    except AuthenticationError as e:
        raise HTTPException(status_code=500, detail=str(e))
    if result is None:
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS_MESSAGE)
    return CheckResponse(
        user=_user_item(result.user),
        has_existing_sessions=bool(result.existing_sessions),
        existing_sessions=result.existing_sessions,
    )


@router.post("/login", response_model=LoginResponse)
@limiter.limit(AUTH_RATE_LIMIT)
def login(request: Request, body: LoginRequest, services: Services = Depends(get_services)) -> LoginResponse:
    """邮箱+密码登录。已有会话且未 force 时要求前端确认。"""
    sessions = services.sessions
    try:
        if not body.force:
            check = sessions.check_credentials(body.email, body.password)
            if check is None:
                metrics.logins_total.labels(outcome="rejected").inc()
                raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS_MESSAGE)
            if check.existing_sessions:
                metrics.logins_total.labels(outcome="needs_confirmation").inc()
                return LoginResponse(
                    requires_confirmation=True,
                    user=_user_item(check.user),
                    existing_sessions=check.existing_sessions,
                    message="You are already logged in on another device. Continue to end that session.",
                )

        result = sessions.authenticate_user(
            body.email,
            body.password,
            user_agent=request.headers.get("user-agent"),
            ip_address=client_ip(request),
        )
    except AuthenticationError as e:
        raise HTTPException(status_code=500, detail=str(e))

    if result is None:
        metrics.logins_total.labels(outcome="rejected").inc()
        raise HTTPException(status_code=401, detail=INVALID_CREDENTIALS_MESSAGE)

    metrics.logins_total.labels(outcome="success").inc()
    return LoginResponse(
        user=_user_item(result.user),
        token=result.token,
        session_id=result.session_id,
        invalidated_sessions=result.invalidated_sessions,
        message="Login successful.",
    )


@router.post("/logout")
def logout(
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    services.sessions.logout(claims.session_id)
    return {"success": True, "message": "Logged out successfully"}


@router.post("/logout-all")
def logout_all(
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    """登出该用户的所有会话（包括当前会话）。"""
    invalidated = services.sessions.invalidate_user_sessions(claims.user_id)
    return {"success": True, "invalidated_sessions": invalidated}


@router.get("/verify")
def verify(
    claims: TokenClaims = Depends(get_current_claims),
    services: Services = Depends(get_services),
) -> dict:
    user = _lookup_user(services, claims.user_id)
    return {"success": True, "data": {"user": _user_item(user)}}


@router.get("/me")
def me(
    claims: TokenClaims = Depends(get_current_claims),
    token: str | None = Depends(bearer_token),
    services: Services = Depends(get_services),
) -> dict:
    user = _lookup_user(services, claims.user_id)
    return {
        "success": True,
        "data": {
            "user": _user_item(user),
            "token": token,
            "session_id": claims.session_id,
        },
        "message": "Login successful.",
    }
