from dataclasses import dataclass

from jose import JWTError, jwt
from starlette.requests import Request

from app.core.config import get_settings


@dataclass
class AuthUser:
    sub: str
    roles: list[str]
    tenant_id: str | None = None


async def get_current_user(request: Request) -> AuthUser:
    auth_header = request.headers.get("authorization", "")
    token = auth_header.replace("Bearer ", "") if auth_header.startswith("Bearer ") else ""

    if not token:
        return AuthUser(sub="anonymous", roles=["guest"])

    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError:
        return AuthUser(sub="anonymous", roles=["guest"])

    subject = str(payload.get("sub", "anonymous"))
    roles = payload.get("roles", ["user"])
    if not isinstance(roles, list):
        roles = ["user"]
    tenant_raw = payload.get("tenant_id")
    tenant_id = str(tenant_raw) if tenant_raw else None
    context = getattr(request.state, "context", None)
    if context is not None:
        context.user_id = subject
        if tenant_id:
            context.tenant_id = tenant_id
    return AuthUser(sub=subject, roles=[str(role) for role in roles], tenant_id=tenant_id)
