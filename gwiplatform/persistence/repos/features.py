from __future__ import annotations

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.domain.models import FeatureFlag, OrgFeatureOverride, PlanFeature


async def get_flag(session: AsyncSession, feature_key: str) -> FeatureFlag | None:
    result = await session.execute(select(FeatureFlag).where(FeatureFlag.key == feature_key))
    return result.scalar_one_or_none()


async def list_flags(session: AsyncSession) -> list[FeatureFlag]:
    result = await session.execute(select(FeatureFlag).order_by(FeatureFlag.key))
    return list(result.scalars().all())


async def get_plan_feature(
    session: AsyncSession, *, plan_tier: str, feature_key: str
) -> PlanFeature | None:
    result = await session.execute(
        select(PlanFeature).where(
            PlanFeature.plan_tier == plan_tier,
            PlanFeature.feature_key == feature_key,
        )
    )
    return result.scalar_one_or_none()


async def list_plan_features(session: AsyncSession, feature_key: str) -> list[PlanFeature]:
    result = await session.execute(
        select(PlanFeature)
        .where(PlanFeature.feature_key == feature_key)
        .order_by(PlanFeature.plan_tier)
    )
    return list(result.scalars().all())


async def get_override(
    session: AsyncSession, *, org_id: str, feature_key: str
) -> OrgFeatureOverride | None:
    result = await session.execute(
        select(OrgFeatureOverride).where(
            OrgFeatureOverride.organization_id == org_id,
            OrgFeatureOverride.feature_key == feature_key,
        )
    )
    return result.scalar_one_or_none()
