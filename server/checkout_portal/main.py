from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from checkout_portal.api.routes import auth, checkout, events, health, magic_links, provisioning, users, webhooks
from checkout_portal.core.config import get_settings
from checkout_portal.core.logging import configure_logging, get_logger
from checkout_portal.db.session import lifespan


configure_logging(get_settings().log_level)
logger = get_logger(__name__)


def create_application() -> FastAPI:
    settings = get_settings()
    application = FastAPI(title=settings.app_name, lifespan=lifespan)
    application.include_router(health.router)
    application.include_router(auth.router)
    application.include_router(users.router)
    application.include_router(checkout.router)
    application.include_router(webhooks.router)
    application.include_router(magic_links.router)
    application.include_router(provisioning.router)
    application.include_router(events.router)

    if settings.allowed_origins:
        application.add_middleware(
            CORSMiddleware,
            allow_origins=[str(origin).rstrip("/") for origin in settings.allowed_origins],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    logger.info("application.created", environment=settings.environment)
    return application


app = create_application()
