from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from imgoptim.api.routes.bulk import router as bulk_router
from imgoptim.api.routes.health import router as health_router
from imgoptim.api.routes.inventory import router as inventory_router
from imgoptim.api.routes.stats import router as stats_router
from imgoptim.api.routes.uploads import router as uploads_router
from imgoptim.core.config import get_settings
from imgoptim.core.logging import configure_logging
from imgoptim.db.init_db import initialize_database

logger = logging.getLogger(__name__)

API_PREFIX = "/api/v1"
_ROUTERS = (health_router, bulk_router, uploads_router, stats_router, inventory_router)


@asynccontextmanager
async def lifespan(_app: FastAPI):
    settings = get_settings()
    configure_logging(settings.log_level)
    initialize_database()
    logger.info(
        "%s ready: libraries at %s, quality %d-%d",
        settings.app_name,
        settings.libraries_root.as_posix(),
        settings.min_quality,
        settings.max_quality,
    )
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    for router in _ROUTERS:
        app.include_router(router, prefix=API_PREFIX)
    return app
