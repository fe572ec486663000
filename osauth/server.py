# FILE: osauth/server.py
# Usage: python -m osauth.server  (settings from OSAUTH_* env / OSAUTH_CONFIG_PATH)
from __future__ import annotations

import logging

from .config import make_reloadable_settings
from .logging import configure_json_logging
from .service_http import create_app

logger = logging.getLogger(__name__)


def main() -> None:
    import uvicorn

    settings = make_reloadable_settings().get()
    configure_json_logging(settings.log_level, version=settings.version)
    logger.info(
        "starting osauth on %s:%d (storage=%s, config_hash=%s)",
        settings.http_host,
        settings.http_port,
        settings.storage_dsn.split("://", 1)[0],
        settings.config_hash(),
    )
    uvicorn.run(
        create_app(settings=settings),
        host=settings.http_host,
        port=settings.http_port,
        log_config=None,
    )


if __name__ == "__main__":
    main()
