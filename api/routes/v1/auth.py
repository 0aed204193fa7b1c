"""
api/routes/v1/auth.py -- Registration, login and user access key endpoints.

Routes:
  POST   /api/v1/auth/register            -- create an unconfirmed user; returns its registration token
  POST   /api/v1/auth/register/confirm    -- consume the registration token (single use)
  POST   /api/v1/auth/login               -- password login; sets the session cookie
  POST   /api/v1/auth/logout              -- deletes the session; clears the cookie
  GET    /api/v1/auth/me                  -- current user and project memberships
  POST   /api/v1/auth/access-keys         -- mint a user access key (raw key shown once)
  GET    /api/v1/auth/access-keys         -- list the caller's access keys
  DELETE /api/v1/auth/access-keys/{id}    -- revoke one of the caller's keys

Security:
  POST /login and POST /register are rate-limited per IP.
  authenticate_user() provides timing equalization -- use it, never inline.
  Login is refused until registration is confirmed.
  Cache-Control: no-store on every response that carries a raw secret.
  IDOR guard: DELETE /access-keys/{id} passes user_id to the store.
"""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, Response
from fastapi.responses import JSONResponse

from api.limiter import limiter
from api.models import (
    AccessKeyCreatedResponse,
    AccessKeyResponse,
    LoginRequest,
    MembershipSummary,
    MeResponse,
    RegisterConfirmRequest,
    RegisterRequest,
    RegisterResponse,
    UserResponse,
)
from auth.dependencies import get_current_user
from auth.models import CredentialKind, User
from auth.store import register_user
from auth.tokens import authenticate_user, generate_secret, hash_password, hash_secret, set_session_cookie
from core.config import get_settings
from core.errors import ProjectNotFoundError, SessionNotFoundError, UserNotFoundError

_settings = get_settings()

# Maximum number of access keys one user may hold at a time.
MAX_ACCESS_KEYS = 10

router = APIRouter()


def _user_response(user: User) -> UserResponse:
    return UserResponse(
        id=user.id,
        email=user.email,
        first_name=user.first_name,
        last_name=user.last_name,
        registration_completed=user.registration_completed,
        created_at=user.created_at,
    )


# ---------------------------------------------------------------------------
# Public endpoints
# ---------------------------------------------------------------------------


@limiter.limit(_settings.login_rate_limit)
@router.post("/auth/register", response_model=RegisterResponse, status_code=201)
def register(request: Request, response: Response, body: RegisterRequest) -> RegisterResponse:
    """Create a user and a single-use registration token in one transaction.

    A duplicate email surfaces as ConflictError (409) from the store.
    """
    raw_token = generate_secret(CredentialKind.REGISTRATION_TOKEN)
    user, _token = register_user(
        request.app.state.stores.engine,
        body.email,
        hash_password(body.password),
        hash_secret(CredentialKind.REGISTRATION_TOKEN, raw_token),
        body.first_name,
        body.last_name,
    )
    response.headers["Cache-Control"] = "no-store"
    return RegisterResponse(user=_user_response(user), registration_token=raw_token)


@router.post("/auth/register/confirm", response_model=UserResponse)
def confirm_registration(request: Request, body: RegisterConfirmRequest) -> UserResponse:
    """Consume a registration token and mark its user registration-completed.

    Unknown token -> 404. Already-consumed token -> 400.
    """
    stores = request.app.state.stores
    token = stores.registration_tokens.validate_registration_token(
        hash_secret(CredentialKind.REGISTRATION_TOKEN, body.registration_token)
    )
    user = stores.registration_tokens.consume_registration_token(token.id)
    return _user_response(user)


@limiter.limit(_settings.login_rate_limit)  # must be ABOVE @router to preserve FastAPI introspection
@router.post("/auth/login", response_model=UserResponse)
def login(request: Request, body: LoginRequest) -> JSONResponse:
    """Authenticate with email and password; set the session cookie.

    Returns the same generic error for an unknown email and a wrong password
    so the response does not reveal which emails are registered.
    """
    stores = request.app.state.stores
    try:
        user = authenticate_user(stores.users, body.email, body.password)
    except UserNotFoundError:
        resp = JSONResponse(
            status_code=401,
            content={"error": {"code": "bad_credentials", "message": "Invalid email or password."}},
        )
        resp.headers["Cache-Control"] = "no-store"
        return resp

    if not user.registration_completed:
        return JSONResponse(
            status_code=403,
            content={"error": {"code": "registration_incomplete", "message": "Confirm your registration first."}},
        )

    raw_session = generate_secret(CredentialKind.SESSION)
    stores.sessions.create_session(user.id, hash_secret(CredentialKind.SESSION, raw_session))
    resp = JSONResponse(status_code=200, content=_user_response(user).model_dump())
    set_session_cookie(resp, raw_session)
    resp.headers["Cache-Control"] = "no-store"
    return resp


@router.post("/auth/logout")
def logout(request: Request) -> JSONResponse:
    """Delete the server-side session (if any) and clear the cookie.

    Deletion is immediate: the raw cookie value stops validating at once,
    even if a client kept a copy.
    """
    raw_session = request.cookies.get("session")
    if raw_session:
        sessions = request.app.state.stores.sessions
        try:
            session = sessions.validate_session(hash_secret(CredentialKind.SESSION, raw_session))
            sessions.delete_session(session.id)
        except SessionNotFoundError:
            pass  # already gone; logout is idempotent
    resp = JSONResponse(content={"message": "Logged out."})
    resp.delete_cookie("session")
    return resp


# ---------------------------------------------------------------------------
# Authenticated endpoints
# ---------------------------------------------------------------------------


@router.get("/auth/me", response_model=MeResponse)
def me(request: Request, current_user: User = Depends(get_current_user)) -> MeResponse:
    """Return the current user and the projects they belong to."""
    stores = request.app.state.stores
    summaries = []
    for membership in stores.memberships.list_memberships_by_user(current_user.id):
        try:
            project = stores.projects.get_project(membership.project_id)
        except ProjectNotFoundError:
            continue
        summaries.append(MembershipSummary(project_id=project.id, project_name=project.name))
    return MeResponse(user=_user_response(current_user), memberships=summaries)


@router.post("/auth/access-keys", response_model=AccessKeyCreatedResponse, status_code=201)
def create_access_key(
    request: Request,
    response: Response,
    current_user: User = Depends(get_current_user),
) -> AccessKeyCreatedResponse:
    """Mint a user access key. The raw key is shown ONCE and never stored.

    Enforces a cap of MAX_ACCESS_KEYS keys per user.
    """
    keys = request.app.state.stores.user_access_keys
    if len(keys.list_user_access_keys(current_user.id)) >= MAX_ACCESS_KEYS:
        raise HTTPException(
            status_code=400,
            detail={
                "code": "key_limit_reached",
                "message": f"Maximum of {MAX_ACCESS_KEYS} access keys per user. Revoke an existing key first.",
            },
        )
    raw_key = generate_secret(CredentialKind.USER_ACCESS_KEY)
    key = keys.create_user_access_key(current_user.id, hash_secret(CredentialKind.USER_ACCESS_KEY, raw_key))
    response.headers["Cache-Control"] = "no-store"
    return AccessKeyCreatedResponse(id=key.id, created_at=key.created_at, value=raw_key)


@router.get("/auth/access-keys", response_model=list[AccessKeyResponse])
def list_access_keys(request: Request, current_user: User = Depends(get_current_user)) -> list[AccessKeyResponse]:
    """List the caller's access keys, newest first. Hashes are never returned."""
    keys = request.app.state.stores.user_access_keys.list_user_access_keys(current_user.id)
    return [AccessKeyResponse(id=k.id, created_at=k.created_at) for k in keys]


@router.delete("/auth/access-keys/{key_id}", status_code=204)
def delete_access_key(key_id: str, request: Request, current_user: User = Depends(get_current_user)) -> Response:
    """Revoke an access key. Another user's key id gets the same 404 as an unknown one."""
    request.app.state.stores.user_access_keys.delete_user_access_key(key_id, user_id=current_user.id)
    return Response(status_code=204)
