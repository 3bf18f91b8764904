from __future__ import annotations

import logging
import sys

from docsign.core.config import get_settings


_LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def configure_logging(level: str | None = None) -> None:
    # Install one stream handler on the root logger; repeated calls only adjust the level.
    global _configured
    resolved = (level or get_settings().log_level or "INFO").upper()
    root = logging.getLogger()
    root.setLevel(resolved)
    if _configured:
        return
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(logging.Formatter(_LOG_FORMAT))
    root.addHandler(handler)
    # Keep third-party HTTP and SQL chatter out of service logs.
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine", "arq.worker"):
        logging.getLogger(noisy).setLevel(max(logging.WARNING, root.level))
    _configured = True
