import os

import uvicorn

from astralis_api.core.logging import configure_logging, get_logger
from astralis_api.core.settings import get_settings

logger = get_logger("api.server")


def main() -> None:
    configure_logging()
    settings = get_settings()
    host = os.getenv("API_HOST", settings.API_HOST)
    port = int(os.getenv("PORT", str(settings.API_PORT)))
    logger.info(
        "server.start",
        extra={
            "component": "api",
            "host": host,
            "port": port,
            "entitlement_backend": settings.ENTITLEMENT_BACKEND,
        },
    )
    uvicorn.run("astralis_api.main:app", host=host, port=port, log_config=None)


if __name__ == "__main__":
    main()
