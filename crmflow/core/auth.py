from dataclasses import dataclass, field

from fastapi import Depends, HTTPException, status
from jose import JWTError, jwt
from starlette.requests import Request

from crmflow.context import set_current_user_id
from crmflow.core.config import Settings, get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str] = field(default_factory=list)


def _anonymous() -> AuthUser:
    return AuthUser(sub="anonymous", roles=["guest"])


def decode_bearer_token(token: str, settings: Settings) -> AuthUser | None:
    """Verified user from an HS256 bearer token, or ``None`` when the token is invalid."""
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return None

    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    return AuthUser(sub=str(payload.get("sub", "anonymous")), roles=[str(role) for role in roles])


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ").strip() if auth_header.startswith("Bearer ") else ""

    # Unauthenticated callers act as a guest; their activity rows carry no user id.
    user = decode_bearer_token(token, get_settings()) if token else None
    if user is None:
        return _anonymous()

    set_current_user_id(user.sub)
    return user


def require_role(role: str):  # type: ignore[no-untyped-def]
    def dependency(user: AuthUser = Depends(get_current_user)) -> AuthUser:
        if role not in user.roles:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=f"Missing permission: {role}")
        return user

    return dependency
