from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings

ANONYMOUS_ROLES = ["guest"]


@dataclass
class AuthUser:
    sub: str
    roles: list[str]


def _claim_list(payload: dict, claim: str) -> list[str]:
    value = payload.get(claim)
    if not isinstance(value, list):
        return []
    return [str(item) for item in value]


async def get_current_user(request: Request) -> AuthUser:
    """Resolve the caller from a bearer JWT.

    Both the ``roles`` and ``permissions`` claims grant access. A missing or
    invalid token yields the anonymous guest.
    """
    auth_header = request.headers.get("authorization", "")
    token = auth_header.removeprefix("Bearer ") if auth_header.startswith("Bearer ") else ""
    if not token:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=list(ANONYMOUS_ROLES))

    subject = str(payload.get("sub", "anonymous"))
    roles = _claim_list(payload, "roles") + _claim_list(payload, "permissions")
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
    return AuthUser(sub=subject, roles=roles or ["user"])
