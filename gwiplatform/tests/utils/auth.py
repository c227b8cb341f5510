from __future__ import annotations

from httpx import Response

from gwiplatform.domain.models import SuperAdmin, User
from gwiplatform.services.auth.principals import Portal, cookie_name
from gwiplatform.tests.utils.factories import create_super_admin, create_user, issue_session


def cookie_header(**cookies: str) -> dict[str, str]:
    # Build an explicit Cookie header; it takes precedence over the client cookie jar.
    return {"Cookie": "; ".join(f"{name}={value}" for name, value in cookies.items())}


def portal_cookie(portal: Portal, token: str, **extra: str) -> dict[str, str]:
    return cookie_header(**{cookie_name(portal): token}, **extra)


def set_cookie_value(response: Response, name: str) -> str | None:
    # Read a cookie straight from Set-Cookie so host-only test domains do not matter.
    for header in response.headers.get_list("set-cookie"):
        pair = header.split(";", 1)[0]
        key, _, value = pair.partition("=")
        if key.strip() == name:
            return value.strip().strip('"')
    return None


def set_cookie_attributes(response: Response, name: str) -> str:
    for header in response.headers.get_list("set-cookie"):
        if header.split("=", 1)[0].strip() == name:
            return header.lower()
    return ""


async def signed_in_user(**kwargs) -> tuple[User, dict[str, str]]:
    # Provision an end user with a live dashboard session and return its Cookie header.
    user = await create_user(**kwargs)
    token = await issue_session(portal=Portal.DASHBOARD, principal_id=user.id)
    return user, portal_cookie(Portal.DASHBOARD, token)


async def signed_in_admin(
    portal: Portal = Portal.ADMIN, **kwargs
) -> tuple[SuperAdmin, dict[str, str]]:
    admin = await create_super_admin(**kwargs)
    token = await issue_session(portal=portal, principal_id=admin.id)
    return admin, portal_cookie(portal, token)
