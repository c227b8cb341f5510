from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
import hashlib
import logging

from sqlalchemy.ext.asyncio import AsyncSession

from gwiplatform.core.clock import as_utc, utc_now
from gwiplatform.core.config import get_settings
from gwiplatform.core.errors import FeatureConfigError
from gwiplatform.domain.models import (
    UNLIMITED,
    FeatureFlag,
    OrgFeatureOverride,
    Organization,
    PlanFeature,
)
from gwiplatform.persistence.repos import features as features_repo
from gwiplatform.persistence.repos import organizations as orgs_repo


logger = logging.getLogger(__name__)

PLAN_TIERS = ("STARTER", "PROFESSIONAL", "ENTERPRISE")

SOURCE_OVERRIDE = "override"
SOURCE_PLAN = "plan"
SOURCE_ROLLOUT = "rollout"
SOURCE_DEFAULT = "default"
SOURCE_NONE = "none"
SOURCE_INHERITED = "inherited"
SOURCE_UNKNOWN = "unknown"


@dataclass(frozen=True)
class FeatureDecision:
    enabled: bool
    # None means unbounded.
    limit: int | None
    source: str


@dataclass(frozen=True)
class LimitCheck:
    allowed: bool
    limit: int | None
    current: int
    remaining: int | None


def rollout_bucket(feature_key: str, org_id: str) -> int:
    # Stable 0-99 bucket from the first 64 bits of sha256("<flag>:<org>").
    digest = hashlib.sha256(f"{feature_key}:{org_id}".encode("utf-8")).hexdigest()
    return int(digest[:16], 16) % 100


def in_rollout(feature_key: str, org_id: str, percentage: int) -> bool:
    return rollout_bucket(feature_key, org_id) < percentage


def normalize_limit(value: int | None) -> int | None:
    # Stored -1 and null both mean "no limit".
    if value is None or value == UNLIMITED:
        return None
    return value


def _active_override(
    override: OrgFeatureOverride | None, now: datetime
) -> OrgFeatureOverride | None:
    if override is None:
        return None
    expires_at = as_utc(override.expires_at)
    if expires_at is not None and expires_at <= now:
        return None
    return override


def decide(
    flag: FeatureFlag,
    org_id: str,
    plan: PlanFeature | None,
    override: OrgFeatureOverride | None,
) -> FeatureDecision:
    """Combine the stored rows into a decision; ``override`` must already be unexpired."""
    if override is not None and override.enabled is not None:
        enabled = bool(override.enabled)
        source = SOURCE_OVERRIDE
    elif flag.rollout_percentage is not None:
        # Rollout replaces the global default and narrows any plan default.
        bucketed = in_rollout(flag.key, org_id, flag.rollout_percentage)
        base = plan.enabled if plan is not None else True
        enabled = bool(base) and bucketed
        source = SOURCE_ROLLOUT
    elif plan is not None:
        enabled = bool(plan.enabled)
        source = SOURCE_PLAN
    elif flag.is_enabled_by_default:
        enabled = True
        source = SOURCE_DEFAULT
    else:
        enabled = False
        source = SOURCE_NONE

    # Limits follow the same precedence, independent of which step set enablement.
    if override is not None and override.limit is not None:
        limit = override.limit
    elif plan is not None and plan.limit is not None:
        limit = plan.limit
    else:
        limit = flag.default_limit
    return FeatureDecision(enabled=enabled, limit=normalize_limit(limit), source=source)


async def is_enabled(
    session: AsyncSession,
    org: Organization,
    feature_key: str,
    now: datetime | None = None,
) -> FeatureDecision:
    # Own-org resolution only; hierarchy inheritance lives in is_enabled_inherited.
    flag = await features_repo.get_flag(session, feature_key)
    if flag is None:
        return FeatureDecision(enabled=False, limit=None, source=SOURCE_UNKNOWN)
    current = now or utc_now()
    override = _active_override(
        await features_repo.get_override(session, org_id=org.id, feature_key=feature_key),
        current,
    )
    plan = await features_repo.get_plan_feature(
        session, plan_tier=org.plan_tier, feature_key=feature_key
    )
    return decide(flag, org.id, plan, override)


async def is_enabled_inherited(
    session: AsyncSession,
    org: Organization,
    feature_key: str,
    max_depth: int | None = None,
    now: datetime | None = None,
) -> FeatureDecision:
    """Resolve a flag, deferring to ancestors while the org has no override of its own.

    The walk climbs ``parent_id`` until it finds an organization with an
    unexpired override or reaches a root, then applies the regular chain
    there. Depth is bounded and revisits stop the walk, so a corrupted
    hierarchy falls back to the organization's own decision.
    """
    current_time = now or utc_now()
    depth_limit = get_settings().hierarchy_max_depth if max_depth is None else max_depth
    visited = {org.id}
    current = org
    depth = 0
    while True:
        override = _active_override(
            await features_repo.get_override(session, org_id=current.id, feature_key=feature_key),
            current_time,
        )
        if override is not None or current.parent_id is None:
            decision = await is_enabled(session, current, feature_key, now=current_time)
            if current.id == org.id:
                return decision
            return replace(decision, source=SOURCE_INHERITED)
        if depth >= depth_limit or current.parent_id in visited:
            logger.warning(
                "feature_inheritance_stopped org_id=%s feature_key=%s depth=%s",
                org.id,
                feature_key,
                depth,
            )
            return await is_enabled(session, org, feature_key, now=current_time)
        parent = await orgs_repo.get_organization(session, current.parent_id)
        if parent is None:
            return await is_enabled(session, org, feature_key, now=current_time)
        visited.add(parent.id)
        current = parent
        depth += 1


def check_limit(decision: FeatureDecision, current: int) -> LimitCheck:
    if decision.limit is None:
        return LimitCheck(allowed=True, limit=None, current=current, remaining=None)
    return LimitCheck(
        allowed=current < decision.limit,
        limit=decision.limit,
        current=current,
        remaining=max(0, decision.limit - current),
    )


def _validate_percentage(value: int | None) -> None:
    if value is not None and not 0 <= value <= 100:
        raise FeatureConfigError("rollout_percentage must be between 0 and 100")


def _validate_limit(value: int | None) -> None:
    if value is not None and value < UNLIMITED:
        raise FeatureConfigError("limit must be -1 (unlimited) or a non-negative integer")


def _validate_tier(plan_tier: str) -> str:
    normalized = plan_tier.strip().upper()
    if normalized not in PLAN_TIERS:
        raise FeatureConfigError(f"Unsupported plan tier: {plan_tier}")
    return normalized


async def create_flag(
    session: AsyncSession,
    *,
    key: str,
    name: str,
    description: str | None = None,
    is_enabled_by_default: bool = False,
    rollout_percentage: int | None = None,
    default_limit: int | None = None,
) -> FeatureFlag:
    _validate_percentage(rollout_percentage)
    _validate_limit(default_limit)
    if await features_repo.get_flag(session, key) is not None:
        raise FeatureConfigError(f"Feature flag already exists: {key}")
    flag = FeatureFlag(
        key=key,
        name=name,
        description=description,
        is_enabled_by_default=is_enabled_by_default,
        rollout_percentage=rollout_percentage,
        default_limit=default_limit,
    )
    session.add(flag)
    await session.flush()
    return flag


async def update_flag(session: AsyncSession, flag: FeatureFlag, **changes: object) -> FeatureFlag:
    # Only whitelisted columns are mutable; the key is the identity.
    allowed = {"name", "description", "is_enabled_by_default", "rollout_percentage", "default_limit"}
    unknown = set(changes) - allowed
    if unknown:
        raise FeatureConfigError(f"Unsupported fields: {', '.join(sorted(unknown))}")
    for required in ("name", "is_enabled_by_default"):
        if required in changes and changes[required] is None:
            raise FeatureConfigError(f"{required} cannot be null")
    if "rollout_percentage" in changes:
        _validate_percentage(changes["rollout_percentage"])  # type: ignore[arg-type]
    if "default_limit" in changes:
        _validate_limit(changes["default_limit"])  # type: ignore[arg-type]
    for field_name, value in changes.items():
        setattr(flag, field_name, value)
    flag.updated_at = utc_now()
    await session.flush()
    return flag


async def upsert_plan_feature(
    session: AsyncSession,
    *,
    plan_tier: str,
    feature_key: str,
    enabled: bool,
    limit: int | None = None,
) -> PlanFeature:
    tier = _validate_tier(plan_tier)
    _validate_limit(limit)
    row = await features_repo.get_plan_feature(session, plan_tier=tier, feature_key=feature_key)
    if row is None:
        row = PlanFeature(plan_tier=tier, feature_key=feature_key, enabled=enabled, limit=limit)
        session.add(row)
    else:
        row.enabled = enabled
        row.limit = limit
    await session.flush()
    return row


async def delete_plan_feature(session: AsyncSession, *, plan_tier: str, feature_key: str) -> bool:
    row = await features_repo.get_plan_feature(
        session, plan_tier=_validate_tier(plan_tier), feature_key=feature_key
    )
    if row is None:
        return False
    await session.delete(row)
    await session.flush()
    return True


async def upsert_override(
    session: AsyncSession,
    *,
    org_id: str,
    feature_key: str,
    enabled: bool | None,
    limit: int | None = None,
    expires_at: datetime | None = None,
    reason: str | None = None,
    created_by: str | None = None,
) -> OrgFeatureOverride:
    _validate_limit(limit)
    if enabled is None and limit is None:
        raise FeatureConfigError("An override must set enabled, limit, or both")
    row = await features_repo.get_override(session, org_id=org_id, feature_key=feature_key)
    if row is None:
        row = OrgFeatureOverride(organization_id=org_id, feature_key=feature_key)
        session.add(row)
    row.enabled = enabled
    row.limit = limit
    row.expires_at = expires_at
    row.reason = reason
    row.created_by = created_by
    await session.flush()
    return row


async def delete_override(session: AsyncSession, *, org_id: str, feature_key: str) -> bool:
    row = await features_repo.get_override(session, org_id=org_id, feature_key=feature_key)
    if row is None:
        return False
    await session.delete(row)
    await session.flush()
    return True
