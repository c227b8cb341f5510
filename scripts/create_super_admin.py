from __future__ import annotations

import argparse
import asyncio
import getpass
import sys

from sqlalchemy import select

from gwiplatform.domain.models import SuperAdmin
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.services import audit
from gwiplatform.services.auth.passwords import hash_password
from gwiplatform.services.auth.principals import Portal
from gwiplatform.services.auth.sessions import revoke_principal_sessions
from gwiplatform.services.authz.permissions import GWI_ROLE_CAPABILITIES, SUPER_ADMIN_ROLE_CAPABILITIES


_ROLES = sorted(set(SUPER_ADMIN_ROLE_CAPABILITIES) | set(GWI_ROLE_CAPABILITIES))


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Create or update a platform administrator")
    parser.add_argument("--email", required=True, help="Login email")
    parser.add_argument("--name", required=True, help="Display name")
    parser.add_argument("--role", required=True, choices=_ROLES, help="Platform role")
    parser.add_argument(
        "--permission",
        action="append",
        default=[],
        help="Extra capability grant, repeatable (wildcards like gwi:* allowed)",
    )
    parser.add_argument("--password", default=None, help="Password; prompted when omitted")
    return parser


async def _create_admin(args: argparse.Namespace) -> int:
    password = args.password or getpass.getpass("Password: ")
    if len(password) < 12:
        raise ValueError("Password must be at least 12 characters")
    email = args.email.strip().lower()

    async with SessionLocal() as session:
        result = await session.execute(select(SuperAdmin).where(SuperAdmin.email == email))
        admin = result.scalar_one_or_none()
        created = admin is None
        if admin is None:
            admin = SuperAdmin(
                email=email,
                name=args.name,
                password_hash=hash_password(password),
                role=args.role,
            )
            session.add(admin)
        else:
            admin.name = args.name
            admin.role = args.role
            admin.password_hash = hash_password(password)
            admin.is_active = True
            # Credentials changed; existing sessions must sign in again.
            await revoke_principal_sessions(session, principal_id=admin.id)
        admin.permissions_json = sorted(set(args.permission))
        await session.flush()
        await audit.record(
            session=session,
            portal=Portal.ADMIN,
            actor=None,
            action="admin.created" if created else "admin.updated",
            resource_type="super_admin",
            resource_id=admin.id,
            details={"email": email, "role": args.role, "permissions": admin.permissions_json},
            best_effort=False,
        )
        await session.commit()

    print("Super admin saved:")
    print(f"  id: {admin.id}")
    print(f"  email: {email}")
    print(f"  role: {args.role}")
    return 0


def main() -> int:
    parser = _build_parser()
    args = parser.parse_args()
    try:
        return asyncio.run(_create_admin(args))
    except Exception as exc:  # noqa: BLE001 - surface provisioning failures clearly
        print(f"create_super_admin failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
