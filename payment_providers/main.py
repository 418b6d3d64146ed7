from fastapi import FastAPI

from payment_providers.api.routes import callbacks
from payment_providers.core.config import get_settings
from payment_providers.core.logging import configure_logging, get_logger

logger = get_logger(__name__)


def create_application() -> FastAPI:
    settings = get_settings()
    configure_logging(settings.log_level)

    application = FastAPI(title=settings.app_name)
    application.include_router(callbacks.router)
    logger.info(
        "application.created",
        environment=settings.environment,
        idempotency_guard=bool(settings.redis_url),
    )
    return application


app = create_application()
