from __future__ import annotations

import asyncio
import sys

from docsign.core.logging import configure_logging
from docsign.services.signing.coordinator import get_signing_coordinator


async def _expire() -> int:
    expired = await get_signing_coordinator().expire_due_documents()
    print(f"Expired {len(expired)} document(s)")
    for document_id in expired:
        print(f"  {document_id}")
    return 0


def main() -> int:
    configure_logging()
    try:
        return asyncio.run(_expire())
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"expire_documents failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
