from __future__ import annotations

import asyncio

from docsign.core.logging import configure_logging
from docsign.persistence.db import create_schema


async def _main() -> None:
    # Local development only; deployed databases go through the alembic revisions.
    configure_logging()
    await create_schema()


if __name__ == "__main__":
    asyncio.run(_main())
