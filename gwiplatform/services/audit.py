from __future__ import annotations

from datetime import datetime
import logging
from typing import Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from starlette.requests import Request

from gwiplatform.core.clock import utc_now
from gwiplatform.core.config import get_settings
from gwiplatform.domain.models import AuditLogEntry
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.services.auth.principals import Portal, Principal


logger = logging.getLogger(__name__)

_SENSITIVE_KEY_PATTERNS = ["password", "token", "secret", "api_key", "authorization", "cookie"]
_REDACTED_VALUE = "[REDACTED]"


def _is_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(pattern in lowered for pattern in _SENSITIVE_KEY_PATTERNS)


def sanitize_details(value: Any) -> Any:
    # Recursively scrub credential-like fields while keeping the rest of the structure.
    if isinstance(value, dict):
        sanitized: dict[str, Any] = {}
        for raw_key, raw_value in value.items():
            key = str(raw_key)
            if _is_sensitive_key(key):
                sanitized[key] = _REDACTED_VALUE
            else:
                sanitized[key] = sanitize_details(raw_value)
        return sanitized
    if isinstance(value, (list, tuple)):
        return [sanitize_details(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    return value


def get_request_context(request: Request | None) -> dict[str, str | None]:
    if request is None:
        return {"ip_address": None, "user_agent": None}
    ip_address = request.client.host if request.client else None
    # Forwarded addresses are client-controlled unless the direct peer is a known proxy.
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and ip_address in get_settings().trusted_proxies:
        ip_address = forwarded.split(",")[0].strip() or ip_address
    return {"ip_address": ip_address, "user_agent": request.headers.get("user-agent")}


async def record(
    *,
    session: AsyncSession | None = None,
    portal: Portal,
    actor: Principal | None,
    action: str,
    resource_type: str,
    resource_id: str | None = None,
    organization_id: str | None = None,
    details: dict[str, Any] | None = None,
    request: Request | None = None,
    occurred_at: datetime | None = None,
    commit: bool = False,
    best_effort: bool = True,
) -> None:
    """Append one audit row.

    With a caller session the row joins the caller's transaction (committed
    only when ``commit`` is set); without one a dedicated session is used so
    the row survives a rollback of the surrounding work. Failures are logged
    and swallowed unless ``best_effort`` is false.
    """
    context = get_request_context(request)
    entry = AuditLogEntry(
        portal=portal.value,
        actor_type=actor.kind.value if actor is not None else "anonymous",
        actor_id=actor.id if actor is not None else None,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        organization_id=organization_id,
        details_json=sanitize_details(details or {}),
        ip_address=context["ip_address"],
        user_agent=context["user_agent"],
        occurred_at=occurred_at or utc_now(),
    )

    if session is None:
        async with SessionLocal() as audit_session:
            try:
                audit_session.add(entry)
                await audit_session.commit()
            except SQLAlchemyError as exc:
                await audit_session.rollback()
                _log_failure(action, exc, best_effort)
                if not best_effort:
                    raise
        return

    try:
        session.add(entry)
        if commit:
            await session.commit()
    except SQLAlchemyError as exc:
        if commit:
            await session.rollback()
        _log_failure(action, exc, best_effort)
        if not best_effort:
            raise


def _log_failure(action: str, exc: Exception, best_effort: bool) -> None:
    level = logger.warning if best_effort else logger.error
    level("audit_write_failed action=%s", action, exc_info=exc)
