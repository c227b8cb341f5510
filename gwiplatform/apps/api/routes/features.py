from __future__ import annotations

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import OrgContext, get_db, get_org_context, not_found_error
from gwiplatform.persistence.repos import features as features_repo
from gwiplatform.services.features import check_limit, is_enabled, is_enabled_inherited


router = APIRouter(prefix="/api/features", tags=["features"])


class FeatureDecisionResponse(BaseModel):
    key: str
    enabled: bool
    # null means unlimited.
    limit: int | None
    source: str
    usage: int | None = None
    allowed: bool | None = None
    remaining: int | None = None


@router.get("/{feature_key}")
async def get_feature_decision(
    feature_key: str,
    usage: int | None = Query(default=None, ge=0),
    inherit: bool = False,
    context: OrgContext = Depends(get_org_context),
    db: AsyncSession = Depends(get_db),
) -> FeatureDecisionResponse:
    # Inheritance is opt-in; the default path only looks at the organization itself.
    if await features_repo.get_flag(db, feature_key) is None:
        raise not_found_error("Feature not found")
    org = context.tenant.organization
    if inherit:
        decision = await is_enabled_inherited(db, org, feature_key)
    else:
        decision = await is_enabled(db, org, feature_key)
    payload = FeatureDecisionResponse(
        key=feature_key,
        enabled=decision.enabled,
        limit=decision.limit,
        source=decision.source,
    )
    if usage is not None:
        limit_check = check_limit(decision, usage)
        payload.usage = usage
        payload.allowed = decision.enabled and limit_check.allowed
        payload.remaining = limit_check.remaining
    return payload
