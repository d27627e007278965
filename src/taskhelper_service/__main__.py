"""Entry point for the marketplace service.

Usage::

    CONFIG_PATH=config.yaml python -m taskhelper_service
"""

from __future__ import annotations

import uvicorn

from taskhelper_service.config import get_settings


def main() -> None:
    settings = get_settings()
    uvicorn.run(
        "taskhelper_service.app:create_app",
        factory=True,
        host=settings.server.host,
        port=settings.server.port,
        log_level=settings.server.log_level,
    )


if __name__ == "__main__":
    main()
