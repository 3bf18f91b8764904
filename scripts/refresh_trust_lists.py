from __future__ import annotations

import argparse
import asyncio
import sys

from docsign.core.logging import configure_logging
from docsign.persistence.db import SessionLocal
from docsign.services.trust.service import get_trust_service


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Fetch and install the configured trust lists")
    parser.add_argument("--dry-run", action="store_true", help="fetch and parse without persisting snapshots")
    return parser


async def _refresh(dry_run: bool) -> int:
    service = get_trust_service()
    if dry_run:
        results = await service.refresh()
    else:
        async with SessionLocal() as session:
            results = await service.refresh(session)
    for item in results:
        status = "ok" if item["ok"] else f"failed ({item['error']})"
        print(f"{item['territory']}: {status} providers={item['providers']} sequence={item['sequence']}")
    return 0 if all(item["ok"] for item in results) else 2


def main() -> int:
    configure_logging()
    args = _build_parser().parse_args()
    try:
        return asyncio.run(_refresh(args.dry_run))
    except Exception as exc:  # noqa: BLE001 - surface operational failures in CLI output.
        print(f"refresh_trust_lists failed: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
