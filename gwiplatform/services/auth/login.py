from __future__ import annotations

from dataclasses import dataclass
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from gwiplatform.core.clock import utc_now
from gwiplatform.domain.models import PortalSession, SuperAdmin, User
from gwiplatform.services import audit
from gwiplatform.services.audit import get_request_context
from gwiplatform.services.auth.lockout import get_lockout_store, lockout_key
from gwiplatform.services.auth.passwords import verify_password
from gwiplatform.services.auth.principals import Portal, Principal
from gwiplatform.services.auth.sessions import create_session, resolve


logger = logging.getLogger(__name__)

INVALID_CREDENTIALS = "Invalid credentials"
ACCOUNT_LOCKED = "Too many failed attempts. Try again later."


@dataclass(frozen=True)
class LoginSuccess:
    token: str
    principal: Principal
    session: PortalSession


@dataclass(frozen=True)
class LoginFailure:
    message: str
    locked: bool = False


async def _find_account(
    session: AsyncSession, *, portal: Portal, email: str
) -> User | SuperAdmin | None:
    model = User if portal == Portal.DASHBOARD else SuperAdmin
    result = await session.execute(select(model).where(model.email == email))
    return result.scalar_one_or_none()


async def authenticate(
    session: AsyncSession,
    *,
    portal: Portal,
    email: str,
    password: str,
    request: Request | None = None,
) -> LoginSuccess | LoginFailure:
    # Unknown email, inactive account and wrong password are indistinguishable to the caller.
    normalized_email = email.strip().lower()
    key = lockout_key(portal.value, normalized_email)
    store = await get_lockout_store()
    if await store.is_locked(key):
        logger.info("login_locked portal=%s", portal.value)
        await _audit_failure(portal=portal, email=normalized_email, reason="locked", request=request)
        return LoginFailure(message=ACCOUNT_LOCKED, locked=True)

    account = await _find_account(session, portal=portal, email=normalized_email)
    reason: str | None = None
    if account is None:
        reason = "unknown_email"
    elif not account.is_active:
        reason = "inactive"
    elif not verify_password(password, account.password_hash):
        reason = "bad_password"

    if reason is not None:
        failures = await store.record_failure(key)
        await _audit_failure(
            portal=portal,
            email=normalized_email,
            reason=reason,
            request=request,
            failures=failures,
        )
        return LoginFailure(message=INVALID_CREDENTIALS)

    await store.reset(key)
    context = get_request_context(request)
    if isinstance(account, SuperAdmin):
        account.last_login_at = utc_now()
        account.last_login_ip = context["ip_address"]
    raw_token, row = await create_session(
        session,
        portal=portal,
        principal_id=account.id,
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
    )
    principal = await resolve(session, portal, raw_token)
    if not isinstance(principal, Principal):
        # The account was just verified inside this transaction.
        raise RuntimeError(f"fresh session failed to resolve: {principal}")
    await audit.record(
        session=session,
        portal=portal,
        actor=principal,
        action="auth.login",
        resource_type="session",
        resource_id=row.id,
        request=request,
    )
    await session.commit()
    logger.info("login_succeeded portal=%s principal_id=%s", portal.value, principal.id)
    return LoginSuccess(token=raw_token, principal=principal, session=row)


async def _audit_failure(
    *,
    portal: Portal,
    email: str,
    reason: str,
    request: Request | None,
    failures: int | None = None,
) -> None:
    details: dict[str, object] = {"email": email, "reason": reason}
    if failures is not None:
        details["failures"] = failures
    # Dedicated session so the row persists even though the login transaction commits nothing.
    await audit.record(
        portal=portal,
        actor=None,
        action="auth.login_failed",
        resource_type="session",
        details=details,
        request=request,
    )
