from __future__ import annotations

from arq import run_worker

from docsign.core.logging import configure_logging
from docsign.workers.notification_worker import WorkerSettings


def main() -> None:
    # Notification delivery plus the expiry, reminder and trust-list sweeps.
    configure_logging()
    run_worker(WorkerSettings)


if __name__ == "__main__":
    main()
