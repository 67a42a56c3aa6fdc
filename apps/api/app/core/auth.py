from dataclasses import dataclass, field
from typing import Any

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import Settings, get_settings


@dataclass
class AuthUser:
    sub: str
    email: str | None = None
    claims: dict[str, Any] = field(default_factory=dict)

    @property
    def is_authenticated(self) -> bool:
        return self.sub != "anonymous"


ANONYMOUS = AuthUser(sub="anonymous")


def extract_access_token(request: Request, settings: Settings | None = None) -> str | None:
    """Bearer header first, then the session cookie set by the auth client."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.startswith("Bearer "):
        token = auth_header.removeprefix("Bearer ").strip()
        if token:
            return token

    resolved = settings or get_settings()
    cookie_token = request.cookies.get(resolved.session_cookie_name)
    return cookie_token or None


def decode_access_token(token: str, settings: Settings | None = None) -> dict[str, Any] | None:
    resolved = settings or get_settings()
    options: dict[str, bool] = {}
    if resolved.jwt_audience is None:
        options["verify_aud"] = False
    try:
        return jwt.decode(
            token,
            resolved.jwt_secret,
            algorithms=[resolved.jwt_algorithm],
            audience=resolved.jwt_audience,
            options=options,
        )
    except JWTError:
        return None


def resolve_auth_user(request: Request) -> AuthUser:
    settings = get_settings()
    token = extract_access_token(request, settings)
    if not token:
        return ANONYMOUS

    payload = decode_access_token(token, settings)
    if payload is None or not payload.get("sub"):
        return ANONYMOUS

    email = payload.get("email")
    return AuthUser(sub=str(payload["sub"]), email=str(email) if email else None, claims=payload)


async def get_current_user(request: Request) -> AuthUser:
    user = resolve_auth_user(request)
    context = getattr(request.state, "context", None)
    if context is not None and user.is_authenticated:
        context.user_id = user.sub
    return user
