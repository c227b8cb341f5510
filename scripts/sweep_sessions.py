from __future__ import annotations

import asyncio

from gwiplatform.core.logging import configure_logging
from gwiplatform.persistence.db import SessionLocal
from gwiplatform.services.auth.sessions import sweep_expired_sessions


async def sweep() -> None:
    async with SessionLocal() as session:
        deleted = await sweep_expired_sessions(session)
        await session.commit()
        print(f"swept_sessions={deleted}")


if __name__ == "__main__":
    configure_logging()
    asyncio.run(sweep())
