from __future__ import annotations

from datetime import datetime, timedelta, timezone
from uuid import uuid4

import pytest

from gwiplatform.domain.models import FeatureFlag, OrgFeatureOverride, Organization, PlanFeature
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.services.features import (
    FeatureDecision,
    check_limit,
    decide,
    in_rollout,
    is_enabled,
    is_enabled_inherited,
    rollout_bucket,
)
from gwiplatform.tests.utils.factories import (
    create_flag,
    create_org,
    set_override,
    set_parent,
    set_plan_feature,
)


def _flag(**kwargs) -> FeatureFlag:
    kwargs.setdefault("key", "advanced_export")
    kwargs.setdefault("name", "Advanced export")
    kwargs.setdefault("is_enabled_by_default", False)
    return FeatureFlag(**kwargs)


def test_rollout_bucket_is_stable_and_in_range() -> None:
    for index in range(200):
        org_id = f"org-{index}"
        bucket = rollout_bucket("brand_tracking", org_id)
        assert 0 <= bucket < 100
        assert rollout_bucket("brand_tracking", org_id) == bucket


def test_rollout_bucket_depends_on_flag_key() -> None:
    # Different flags should not roll out to exactly the same organizations.
    buckets_a = [rollout_bucket("flag_a", f"org-{i}") for i in range(50)]
    buckets_b = [rollout_bucket("flag_b", f"org-{i}") for i in range(50)]
    assert buckets_a != buckets_b


def test_rollout_percentage_boundaries() -> None:
    org_ids = [uuid4().hex for _ in range(100)]
    assert not any(in_rollout("flag", org_id, 0) for org_id in org_ids)
    assert all(in_rollout("flag", org_id, 100) for org_id in org_ids)


def test_rollout_partition_is_monotonic() -> None:
    # Raising the percentage only ever adds organizations.
    org_ids = [uuid4().hex for _ in range(100)]
    at_25 = {org_id for org_id in org_ids if in_rollout("flag", org_id, 25)}
    at_50 = {org_id for org_id in org_ids if in_rollout("flag", org_id, 50)}
    assert at_25 <= at_50


def test_decide_disabled_without_any_source() -> None:
    decision = decide(_flag(), "org-a", plan=None, override=None)
    assert decision == FeatureDecision(enabled=False, limit=None, source="none")


def test_decide_precedence_override_then_plan_then_default() -> None:
    flag = _flag(is_enabled_by_default=True, default_limit=5)
    plan = PlanFeature(plan_tier="STARTER", feature_key=flag.key, enabled=False, limit=10)
    override = OrgFeatureOverride(organization_id="org-a", feature_key=flag.key, enabled=True, limit=None)

    assert decide(flag, "org-a", plan, override).enabled is True
    assert decide(flag, "org-a", plan, override).source == "override"
    assert decide(flag, "org-a", plan, None).enabled is False
    assert decide(flag, "org-a", plan, None).source == "plan"
    assert decide(flag, "org-a", None, None).source == "default"


def test_decide_limit_chain_is_independent_of_enablement() -> None:
    flag = _flag(is_enabled_by_default=True, default_limit=5)
    plan = PlanFeature(plan_tier="PROFESSIONAL", feature_key=flag.key, enabled=True, limit=100)
    # Override only narrows the limit; enablement still comes from the plan.
    override = OrgFeatureOverride(organization_id="org-a", feature_key=flag.key, enabled=None, limit=7)

    decision = decide(flag, "org-a", plan, override)
    assert decision.enabled is True
    assert decision.source == "plan"
    assert decision.limit == 7
    assert decide(flag, "org-a", plan, None).limit == 100
    assert decide(flag, "org-a", None, None).limit == 5


def test_decide_minus_one_means_unbounded() -> None:
    flag = _flag(is_enabled_by_default=True)
    plan = PlanFeature(plan_tier="ENTERPRISE", feature_key=flag.key, enabled=True, limit=-1)
    assert decide(flag, "org-a", plan, None).limit is None


def test_decide_rollout_replaces_global_default() -> None:
    flag = _flag(is_enabled_by_default=False, rollout_percentage=100)
    assert decide(flag, "org-a", None, None) == FeatureDecision(True, None, "rollout")
    flag_zero = _flag(is_enabled_by_default=True, rollout_percentage=0)
    assert decide(flag_zero, "org-a", None, None).enabled is False


def test_decide_rollout_cannot_enable_a_plan_disabled_feature() -> None:
    flag = _flag(rollout_percentage=100)
    plan = PlanFeature(plan_tier="STARTER", feature_key=flag.key, enabled=False)
    assert decide(flag, "org-a", plan, None).enabled is False


def test_decide_explicit_override_skips_rollout() -> None:
    flag = _flag(rollout_percentage=0)
    override = OrgFeatureOverride(organization_id="org-a", feature_key=flag.key, enabled=True)
    assert decide(flag, "org-a", None, override).enabled is True


def test_check_limit() -> None:
    bounded = FeatureDecision(enabled=True, limit=3, source="plan")
    assert check_limit(bounded, 2).allowed is True
    assert check_limit(bounded, 2).remaining == 1
    assert check_limit(bounded, 3).allowed is False
    assert check_limit(bounded, 5).remaining == 0
    unbounded = FeatureDecision(enabled=True, limit=None, source="plan")
    result = check_limit(unbounded, 10_000)
    assert result.allowed is True
    assert result.remaining is None


@pytest.mark.asyncio
async def test_advanced_export_disabled_for_starter_without_sources() -> None:
    org = await create_org(plan_tier="STARTER")
    flag = await create_flag(key=f"advanced_export_{uuid4().hex[:8]}", is_enabled_by_default=False)
    async with SessionLocal() as session:
        decision = await is_enabled(session, org, flag.key)
    assert decision.enabled is False


@pytest.mark.asyncio
async def test_is_enabled_reads_plan_and_override_rows() -> None:
    org = await create_org(plan_tier="PROFESSIONAL")
    flag = await create_flag(default_limit=1)
    await set_plan_feature(plan_tier="PROFESSIONAL", feature_key=flag.key, enabled=True, limit=25)
    async with SessionLocal() as session:
        decision = await is_enabled(session, org, flag.key)
    assert decision == FeatureDecision(enabled=True, limit=25, source="plan")

    await set_override(org_id=org.id, feature_key=flag.key, enabled=False)
    async with SessionLocal() as session:
        decision = await is_enabled(session, org, flag.key)
    assert decision.enabled is False
    assert decision.source == "override"
    assert decision.limit == 25


@pytest.mark.asyncio
async def test_expired_override_is_ignored() -> None:
    org = await create_org()
    flag = await create_flag(is_enabled_by_default=False)
    expired = datetime.now(timezone.utc) - timedelta(days=1)
    await set_override(org_id=org.id, feature_key=flag.key, enabled=True, expires_at=expired)
    async with SessionLocal() as session:
        decision = await is_enabled(session, org, flag.key)
    assert decision.enabled is False
    assert decision.source == "none"


@pytest.mark.asyncio
async def test_rollout_decision_is_repeatable() -> None:
    org = await create_org()
    flag = await create_flag(rollout_percentage=50)
    async with SessionLocal() as session:
        first = await is_enabled(session, org, flag.key)
        second = await is_enabled(session, org, flag.key)
    assert first == second
    assert first.enabled is in_rollout(flag.key, org.id, 50)


@pytest.mark.asyncio
async def test_unknown_flag_is_disabled() -> None:
    org = await create_org()
    async with SessionLocal() as session:
        decision = await is_enabled(session, org, f"missing_{uuid4().hex}")
    assert decision.enabled is False
    assert decision.source == "unknown"


@pytest.mark.asyncio
async def test_inherited_decision_comes_from_nearest_overriding_ancestor() -> None:
    root = await create_org(plan_tier="ENTERPRISE")
    middle = await create_org(parent_id=root.id)
    leaf = await create_org(parent_id=middle.id)
    flag = await create_flag()
    await set_override(org_id=root.id, feature_key=flag.key, enabled=True, limit=9)

    async with SessionLocal() as session:
        plain = await is_enabled(session, leaf, flag.key)
        inherited = await is_enabled_inherited(session, leaf, flag.key)
    # The default path never walks the hierarchy.
    assert plain.enabled is False
    assert inherited == FeatureDecision(enabled=True, limit=9, source="inherited")


@pytest.mark.asyncio
async def test_own_override_wins_over_inheritance() -> None:
    root = await create_org()
    child = await create_org(parent_id=root.id)
    flag = await create_flag()
    await set_override(org_id=root.id, feature_key=flag.key, enabled=True)
    await set_override(org_id=child.id, feature_key=flag.key, enabled=False)
    async with SessionLocal() as session:
        decision = await is_enabled_inherited(session, child, flag.key)
    assert decision.enabled is False
    assert decision.source == "override"


@pytest.mark.asyncio
async def test_inheritance_stops_at_max_depth() -> None:
    root = await create_org()
    flag = await create_flag()
    await set_override(org_id=root.id, feature_key=flag.key, enabled=True)
    parent_id = root.id
    chain = []
    for _ in range(3):
        org = await create_org(parent_id=parent_id)
        chain.append(org)
        parent_id = org.id
    leaf = chain[-1]

    async with SessionLocal() as session:
        shallow = await is_enabled_inherited(session, leaf, flag.key, max_depth=1)
        deep = await is_enabled_inherited(session, leaf, flag.key, max_depth=5)
    assert shallow.enabled is False
    assert deep.enabled is True
    assert deep.source == "inherited"


@pytest.mark.asyncio
async def test_inheritance_terminates_on_cycle() -> None:
    first = await create_org()
    second = await create_org(parent_id=first.id)
    await set_parent(first.id, second.id)
    flag = await create_flag(is_enabled_by_default=True)

    async with SessionLocal() as session:
        org = await session.get(Organization, second.id)
        decision = await is_enabled_inherited(session, org, flag.key)
    # Falls back to the organization's own chain.
    assert decision == FeatureDecision(enabled=True, limit=None, source="default")
