import hmac

from fastapi import Depends, Header, Request

from courier_dispatch.container import Container
from courier_dispatch.errors import AuthenticationFailed, Forbidden

ADMIN = "admin"
OPS = "ops"


def get_container(request: Request) -> Container:
    return request.app.state.container


def bearer_token(authorization: str | None = Header(default=None)) -> str:
    if not authorization or not authorization.lower().startswith("bearer "):
        raise AuthenticationFailed("Missing Authorization bearer token")
    token = authorization.split(" ", 1)[1].strip()
    if not token:
        raise AuthenticationFailed("Missing Authorization bearer token")
    return token


def _role_for(token: str, container: Container) -> str | None:
    s = container.settings
    if s.admin_api_key and hmac.compare_digest(token, s.admin_api_key):
        return ADMIN
    if s.ops_api_key and hmac.compare_digest(token, s.ops_api_key):
        return OPS
    return None


def require_role(*roles: str):
    """Caller is authenticated upstream; only the role mapped from its key is checked here."""
    async def dependency(
        token: str = Depends(bearer_token),
        container: Container = Depends(get_container),
    ) -> str:
        role = _role_for(token, container)
        if role is None:
            raise AuthenticationFailed("Unknown admin token")
        if role not in roles:
            raise Forbidden(f"Role '{role}' may not perform this action")
        return role

    return dependency


async def require_driver(
    token: str = Depends(bearer_token),
    container: Container = Depends(get_container),
) -> dict:
    driver = await container.drivers.get_session_driver(token)
    if driver is None:
        raise AuthenticationFailed("Invalid or revoked driver session")
    if not driver["active"]:
        raise Forbidden("Driver account is disabled")
    return driver
