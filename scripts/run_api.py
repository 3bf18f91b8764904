from __future__ import annotations

import os

import uvicorn


def main() -> None:
    # The app factory configures logging; uvicorn only needs the import path.
    uvicorn.run(
        "docsign.apps.api.main:app",
        host=os.getenv("DOCSIGN_HOST", "0.0.0.0"),
        port=int(os.getenv("DOCSIGN_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
