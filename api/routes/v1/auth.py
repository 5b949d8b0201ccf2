"""
api/routes/v1/auth.py -- Public authentication endpoints.

Routes:
  POST /api/auth/signup   -- create a role=user account; 201 + user + token pair
  POST /api/auth/login    -- password login; user + token pair
  POST /api/auth/refresh  -- rotate a refresh token; new pair
  POST /api/auth/logout   -- revoke a refresh token; always 200 once a token is sent
  GET  /api/auth/profile  -- current user (requires bearer access token)

Security:
  signup, login and refresh are rate-limited per client IP (Settings.auth_rate_limit).
  @limiter.limit goes under @router.post so the router registers the limited wrapper.
  Cache-Control: no-store on every response that carries tokens.
  All credential logic lives in the Authenticator on app.state; handlers
  only translate HTTP in and out. Failures propagate as AuthError and are
  rendered by the handler in api/main.py.
"""

from fastapi import APIRouter, Depends, Request, Response

from api.limiter import AUTH_LIMIT, limiter
from api.models import (
    AuthResponse,
    LoginRequest,
    MessageResponse,
    ProfileResponse,
    RefreshRequest,
    SignupRequest,
    TokenPairResponse,
    user_response,
)
from auth.dependencies import client_ip, get_current_user
from auth.models import AuthResult, User
from auth.service import Authenticator

# Auth policy:
# - POST /signup, /login, /refresh, /logout: public
# - GET  /profile: requires auth (get_current_user)
router = APIRouter()


def _authenticator(request: Request) -> Authenticator:
    return request.app.state.authenticator


def _auth_response(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=user_response(result.user),
        access_token=result.tokens.access_token,
        refresh_token=result.tokens.refresh_token,
    )


@router.post("/signup", response_model=AuthResponse, status_code=201)
@limiter.limit(AUTH_LIMIT)
def signup(request: Request, response: Response, body: SignupRequest) -> AuthResponse:
    """Register a new account. Self-signup always produces role "user"."""
    result = _authenticator(request).signup(
        body.name, body.email, body.password, client_ip(request), request.headers.get("user-agent")
    )
    response.headers["Cache-Control"] = "no-store"
    return _auth_response(result)


@router.post("/login", response_model=AuthResponse)
@limiter.limit(AUTH_LIMIT)
def login(request: Request, response: Response, body: LoginRequest) -> AuthResponse:
    """Authenticate with email and password.

    Unknown email and wrong password return the same invalid_credentials
    error. A locked account answers 423 even for the right password.
    """
    result = _authenticator(request).login(
        body.email, body.password, client_ip(request), request.headers.get("user-agent")
    )
    response.headers["Cache-Control"] = "no-store"
    return _auth_response(result)


@router.post("/refresh", response_model=TokenPairResponse)
@limiter.limit(AUTH_LIMIT)
def refresh(request: Request, response: Response, body: RefreshRequest) -> TokenPairResponse:
    """Exchange a refresh token for a new pair. The presented token stops working."""
    pair = _authenticator(request).refresh(
        body.refresh_token, client_ip(request), request.headers.get("user-agent")
    )
    response.headers["Cache-Control"] = "no-store"
    return TokenPairResponse(access_token=pair.access_token, refresh_token=pair.refresh_token)


@router.post("/logout", response_model=MessageResponse)
def logout(request: Request, body: RefreshRequest) -> MessageResponse:
    """Revoke the given refresh token. Repeating the call is harmless."""
    _authenticator(request).logout(body.refresh_token, client_ip(request), request.headers.get("user-agent"))
    return MessageResponse(message="Logged out.")


@router.get("/profile", response_model=ProfileResponse)
def profile(request: Request, current_user: User = Depends(get_current_user)) -> ProfileResponse:
    """Return the authenticated user's own account."""
    return ProfileResponse(user=user_response(_authenticator(request).get_profile(current_user.id)))
