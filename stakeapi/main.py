import logging
from dotenv import load_dotenv
from fastapi import FastAPI, Request
from mangum import Mangum
from starlette.middleware.cors import CORSMiddleware

from stakeapi import containers
from stakeapi.config import settings
from stakeapi.core.exception_handlers import register_exception_handlers
from stakeapi.logging_config import configure_logging
from stakeapi.routers import (
    admin_router,
    challenge_router,
    health_router,
    user_router,
    wallet_router,
)

logger = logging.getLogger(__name__)


def create_app() -> FastAPI:
    load_dotenv("stakeapi/.env")
    configure_logging(settings.LOG_LEVEL, settings.LOG_FORMAT)

    app = FastAPI(title=settings.PROJECT_NAME, debug=settings.DEBUG)
    app.container = containers.Container()  # type: ignore

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.ALLOWED_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        logger.info(f"Request: {request.method} {request.url}")
        response = await call_next(request)
        logger.info(f"Response: {response.status_code}")
        return response

    register_exception_handlers(app)

    @app.get("/")
    def hello() -> dict:
        return {"message": settings.APP_NAME}

    app.include_router(health_router.router)
    app.include_router(user_router.router, prefix=settings.API_V1_STR)
    app.include_router(challenge_router.router, prefix=settings.API_V1_STR)
    app.include_router(wallet_router.router, prefix=settings.API_V1_STR)
    app.include_router(admin_router.router, prefix=settings.API_V1_STR)
    return app


app = create_app()

handler = Mangum(app)
