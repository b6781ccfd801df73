import asyncio
from loguru import logger
from fastapi import FastAPI
from fastapi.staticfiles import StaticFiles
from contextlib import asynccontextmanager

from essence.core.config import settings as default_settings, Settings
from essence.core.errors import install_exception_handlers
from essence.core.logging import setup_logging
from essence.db.session import AsyncSessionLocal
from essence.services.container import Services, build_services
from essence.services.outbox_loop import outbox_loop
from essence.services.storage import ensure_dir

from essence.api.jobs import router as jobs_router
from essence.api.webhooks import router as webhooks_router
from essence.api.registrations import router as registrations_router


@asynccontextmanager
async def lifespan(app: FastAPI):
    # STARTUP
    services: Services = app.state.services
    task = asyncio.create_task(
        outbox_loop(services.outbox, poll_interval=services.settings.OUTBOX_POLL_INTERVAL)
    )

    yield

    # SHUTDOWN
    task.cancel()
    try:
        await task
    except asyncio.CancelledError:
        pass


def create_app(settings: Settings | None = None, services: Services | None = None) -> FastAPI:
    settings = settings or default_settings
    setup_logging(settings.LOG_LEVEL)

    app = FastAPI(
        title=settings.PROJECT_NAME,
        lifespan=lifespan,
        debug=settings.DEBUG
    )

    app.state.services = services or build_services(settings, AsyncSessionLocal)

    install_exception_handlers(app)

    if settings.STORAGE_BACKEND == 'local':
        ensure_dir(settings.STORAGE_ROOT)
        app.mount('/storage', StaticFiles(directory=settings.STORAGE_ROOT), name='storage')

    @app.get('/health', tags=['system'])
    def health_check():
        return {'status': 'Ok'}

    app.include_router(jobs_router)
    app.include_router(webhooks_router)
    app.include_router(registrations_router)

    logger.info('Application started')
    return app


app = create_app()
