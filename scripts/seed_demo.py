from __future__ import annotations

import asyncio
from dataclasses import dataclass
from datetime import datetime, timezone

from sqlalchemy import select

from gwiplatform.domain.models import (
    UNLIMITED,
    FeatureFlag,
    Membership,
    Organization,
    PlanFeature,
    User,
)
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.persistence.repos import features as features_repo
from gwiplatform.persistence.repos import organizations as orgs_repo
from gwiplatform.services.auth.passwords import hash_password


DEMO_PASSWORD = "demo-password-123"


@dataclass(frozen=True)
class DemoFlag:
    key: str
    name: str
    is_enabled_by_default: bool = False
    rollout_percentage: int | None = None
    # Per-tier (enabled, limit); tiers left out fall back to the flag default.
    plans: tuple[tuple[str, bool, int | None], ...] = ()


def build_demo_flags() -> tuple[DemoFlag, ...]:
    # Limits mirror the published plan sheet; -1 is unlimited.
    return (
        DemoFlag(
            key="agent_runs",
            name="Agent runs per month",
            is_enabled_by_default=True,
            plans=(("STARTER", True, 100), ("PROFESSIONAL", True, 1000), ("ENTERPRISE", True, UNLIMITED)),
        ),
        DemoFlag(
            key="team_seats",
            name="Team seats",
            is_enabled_by_default=True,
            plans=(("STARTER", True, 3), ("PROFESSIONAL", True, 10), ("ENTERPRISE", True, UNLIMITED)),
        ),
        DemoFlag(
            key="data_sources",
            name="Connected data sources",
            is_enabled_by_default=True,
            plans=(("STARTER", True, 5), ("PROFESSIONAL", True, 25), ("ENTERPRISE", True, UNLIMITED)),
        ),
        DemoFlag(
            key="advanced_export",
            name="Advanced export",
            plans=(("PROFESSIONAL", True, None), ("ENTERPRISE", True, None)),
        ),
        DemoFlag(key="brand_tracking", name="Brand tracking", rollout_percentage=25),
    )


async def _get_or_create_user(session, email: str, name: str) -> User:
    result = await session.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        user = User(email=email, name=name, password_hash=hash_password(DEMO_PASSWORD))
        session.add(user)
        await session.flush()
    return user


async def _get_or_create_org(
    session, slug: str, name: str, plan_tier: str, parent_id: str | None
) -> Organization:
    org = await orgs_repo.get_organization_by_slug(session, slug)
    if org is None:
        org = Organization(slug=slug, name=name, plan_tier=plan_tier, parent_id=parent_id)
        session.add(org)
        await session.flush()
    return org


async def seed() -> None:
    async with SessionLocal() as session:
        for demo in build_demo_flags():
            if await session.get(FeatureFlag, demo.key) is None:
                session.add(
                    FeatureFlag(
                        key=demo.key,
                        name=demo.name,
                        is_enabled_by_default=demo.is_enabled_by_default,
                        rollout_percentage=demo.rollout_percentage,
                    )
                )
                await session.flush()
            for tier, enabled, limit in demo.plans:
                existing = await features_repo.get_plan_feature(
                    session, plan_tier=tier, feature_key=demo.key
                )
                if existing is None:
                    session.add(
                        PlanFeature(plan_tier=tier, feature_key=demo.key, enabled=enabled, limit=limit)
                    )

        parent = await _get_or_create_org(session, "acme", "Acme Research", "ENTERPRISE", None)
        child = await _get_or_create_org(session, "acme-emea", "Acme EMEA", "PROFESSIONAL", parent.id)
        starter = await _get_or_create_org(session, "sidekick", "Sidekick Labs", "STARTER", None)

        owner = await _get_or_create_user(session, "owner@example.com", "Olivia Owner")
        analyst = await _get_or_create_user(session, "analyst@example.com", "Andy Analyst")
        joined = datetime(2024, 1, 1, tzinfo=timezone.utc)
        for user, org, role in (
            (owner, parent, "OWNER"),
            (owner, child, "ADMIN"),
            (analyst, child, "MEMBER"),
            (analyst, starter, "VIEWER"),
        ):
            if await orgs_repo.get_membership(session, user_id=user.id, org_id=org.id) is None:
                session.add(
                    Membership(user_id=user.id, organization_id=org.id, role=role, joined_at=joined)
                )

        await session.commit()
        print(f"seeded organizations={parent.slug},{child.slug},{starter.slug} password={DEMO_PASSWORD}")


if __name__ == "__main__":
    asyncio.run(seed())
