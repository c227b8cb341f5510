from __future__ import annotations

from datetime import datetime

from fastapi import APIRouter, Depends, Request, status
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.apps.api.deps import get_db, not_found_error, require_capability
from gwiplatform.apps.api.routes.features import FeatureDecisionResponse
from gwiplatform.core.clock import as_utc
from gwiplatform.domain.models import FeatureFlag, OrgFeatureOverride, PlanFeature
from gwiplatform.persistence.repos import features as features_repo
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services import audit
from gwiplatform.services import features as feature_service
from gwiplatform.services.auth.principals import Portal, Principal


router = APIRouter(prefix="/api/admin", tags=["admin-features"])

_read = require_capability(Portal.ADMIN, "features:read")
_write = require_capability(Portal.ADMIN, "features:write")


class PlanFeatureResponse(BaseModel):
    plan_tier: str
    enabled: bool
    limit: int | None


class FeatureFlagResponse(BaseModel):
    key: str
    name: str
    description: str | None
    is_enabled_by_default: bool
    rollout_percentage: int | None
    default_limit: int | None
    plans: list[PlanFeatureResponse]


class CreateFeatureFlagRequest(BaseModel):
    key: str = Field(min_length=1, max_length=128, pattern=r"^[a-z0-9_.:-]+$")
    name: str = Field(min_length=1, max_length=256)
    description: str | None = None
    is_enabled_by_default: bool = False
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)
    default_limit: int | None = Field(default=None, ge=-1)


class UpdateFeatureFlagRequest(BaseModel):
    name: str | None = Field(default=None, min_length=1, max_length=256)
    description: str | None = None
    is_enabled_by_default: bool | None = None
    rollout_percentage: int | None = Field(default=None, ge=0, le=100)
    default_limit: int | None = Field(default=None, ge=-1)


class PlanFeatureRequest(BaseModel):
    enabled: bool
    limit: int | None = Field(default=None, ge=-1)


class OverrideRequest(BaseModel):
    enabled: bool | None = None
    limit: int | None = Field(default=None, ge=-1)
    expires_at: datetime | None = None
    reason: str | None = Field(default=None, max_length=500)


class OverrideResponse(BaseModel):
    organization_id: str
    feature_key: str
    enabled: bool | None
    limit: int | None
    expires_at: str | None
    reason: str | None
    created_by: str | None


class OrgFeatureStatusResponse(BaseModel):
    override: OverrideResponse | None
    decision: FeatureDecisionResponse


def _plan_payload(row: PlanFeature) -> PlanFeatureResponse:
    return PlanFeatureResponse(
        plan_tier=row.plan_tier,
        enabled=row.enabled,
        limit=feature_service.normalize_limit(row.limit),
    )


async def _flag_payload(db: AsyncSession, flag: FeatureFlag) -> FeatureFlagResponse:
    plans = await features_repo.list_plan_features(db, flag.key)
    return FeatureFlagResponse(
        key=flag.key,
        name=flag.name,
        description=flag.description,
        is_enabled_by_default=flag.is_enabled_by_default,
        rollout_percentage=flag.rollout_percentage,
        default_limit=feature_service.normalize_limit(flag.default_limit),
        plans=[_plan_payload(row) for row in plans],
    )


def _override_payload(row: OrgFeatureOverride) -> OverrideResponse:
    expires_at = as_utc(row.expires_at)
    return OverrideResponse(
        organization_id=row.organization_id,
        feature_key=row.feature_key,
        enabled=row.enabled,
        limit=feature_service.normalize_limit(row.limit),
        expires_at=expires_at.isoformat() if expires_at else None,
        reason=row.reason,
        created_by=row.created_by,
    )


async def _load_flag(db: AsyncSession, feature_key: str) -> FeatureFlag:
    flag = await features_repo.get_flag(db, feature_key)
    if flag is None:
        raise not_found_error("Feature not found")
    return flag


@router.get("/features")
async def list_features(
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> list[FeatureFlagResponse]:
    flags = await features_repo.list_flags(db)
    return [await _flag_payload(db, flag) for flag in flags]


@router.post("/features", status_code=status.HTTP_201_CREATED)
async def create_feature(
    payload: CreateFeatureFlagRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> FeatureFlagResponse:
    flag = await feature_service.create_flag(db, **payload.model_dump())
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.created",
        resource_type="feature_flag",
        resource_id=flag.key,
        details=payload.model_dump(),
        request=request,
    )
    await db.commit()
    return await _flag_payload(db, flag)


@router.patch("/features/{feature_key}")
async def update_feature(
    feature_key: str,
    payload: UpdateFeatureFlagRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> FeatureFlagResponse:
    flag = await _load_flag(db, feature_key)
    # Only fields present in the body change; an explicit null clears rollout or limit.
    changes = payload.model_dump(exclude_unset=True)
    flag = await feature_service.update_flag(db, flag, **changes)
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.updated",
        resource_type="feature_flag",
        resource_id=flag.key,
        details=changes,
        request=request,
    )
    await db.commit()
    return await _flag_payload(db, flag)


@router.put("/features/{feature_key}/plans/{plan_tier}")
async def put_plan_feature(
    feature_key: str,
    plan_tier: str,
    payload: PlanFeatureRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> PlanFeatureResponse:
    await _load_flag(db, feature_key)
    row = await feature_service.upsert_plan_feature(
        db,
        plan_tier=plan_tier,
        feature_key=feature_key,
        enabled=payload.enabled,
        limit=payload.limit,
    )
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.plan_updated",
        resource_type="plan_feature",
        resource_id=f"{row.plan_tier}:{feature_key}",
        details=payload.model_dump(),
        request=request,
    )
    await db.commit()
    return _plan_payload(row)


@router.delete("/features/{feature_key}/plans/{plan_tier}")
async def delete_plan_feature(
    feature_key: str,
    plan_tier: str,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await feature_service.delete_plan_feature(
        db, plan_tier=plan_tier, feature_key=feature_key
    )
    if not deleted:
        raise not_found_error("Plan feature not found")
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.plan_removed",
        resource_type="plan_feature",
        resource_id=f"{plan_tier.upper()}:{feature_key}",
        request=request,
    )
    await db.commit()
    return {"success": True}


@router.get("/organizations/{org_id}/features/{feature_key}")
async def get_org_feature(
    org_id: str,
    feature_key: str,
    principal: Principal = Depends(_read),
    db: AsyncSession = Depends(get_db),
) -> OrgFeatureStatusResponse:
    await _load_flag(db, feature_key)
    org = await orgs_repo.get_organization(db, org_id)
    if org is None:
        raise not_found_error("Organization not found")
    override = await features_repo.get_override(db, org_id=org_id, feature_key=feature_key)
    decision = await feature_service.is_enabled(db, org, feature_key)
    return OrgFeatureStatusResponse(
        override=_override_payload(override) if override else None,
        decision=FeatureDecisionResponse(
            key=feature_key,
            enabled=decision.enabled,
            limit=decision.limit,
            source=decision.source,
        ),
    )


@router.put("/organizations/{org_id}/features/{feature_key}")
async def put_org_feature(
    org_id: str,
    feature_key: str,
    payload: OverrideRequest,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> OverrideResponse:
    await _load_flag(db, feature_key)
    if await orgs_repo.get_organization(db, org_id) is None:
        raise not_found_error("Organization not found")
    row = await feature_service.upsert_override(
        db,
        org_id=org_id,
        feature_key=feature_key,
        enabled=payload.enabled,
        limit=payload.limit,
        expires_at=payload.expires_at,
        reason=payload.reason,
        created_by=principal.id,
    )
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.override_set",
        resource_type="org_feature_override",
        resource_id=feature_key,
        organization_id=org_id,
        details=payload.model_dump(),
        request=request,
    )
    await db.commit()
    return _override_payload(row)


@router.delete("/organizations/{org_id}/features/{feature_key}")
async def delete_org_feature(
    org_id: str,
    feature_key: str,
    request: Request,
    principal: Principal = Depends(_write),
    db: AsyncSession = Depends(get_db),
) -> dict:
    deleted = await feature_service.delete_override(db, org_id=org_id, feature_key=feature_key)
    if not deleted:
        raise not_found_error("Override not found")
    await audit.record(
        session=db,
        portal=Portal.ADMIN,
        actor=principal,
        action="feature.override_removed",
        resource_type="org_feature_override",
        resource_id=feature_key,
        organization_id=org_id,
        request=request,
    )
    await db.commit()
    return {"success": True}
