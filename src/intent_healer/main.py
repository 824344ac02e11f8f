import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api.admin_endpoints import router as admin_router
from .core.config import Settings
from .core.logging_config import setup_healing_logging
from .services.healing_runtime import HealingRuntime


def create_app(runtime: Optional[HealingRuntime] = None, settings: Optional[Settings] = None) -> FastAPI:
    """Create the admin application.

    When no runtime is given one is built from the environment on startup
    and shut down with the application. A runtime passed in stays owned by
    the caller.
    """
    owns_runtime = runtime is None

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if owns_runtime:
            app_settings = settings or Settings()
            setup_healing_logging(app_settings.LOG_LEVEL, app_settings.LOG_DIR)
            app.state.runtime = HealingRuntime.from_config(settings=app_settings)
        try:
            yield
        finally:
            if owns_runtime and getattr(app.state, "runtime", None) is not None:
                app.state.runtime.shutdown()
                logging.getLogger("healer.engine").info("Admin application stopped")

    app = FastAPI(title="Intent Healer Admin", lifespan=lifespan)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.runtime = runtime
    app.include_router(admin_router)
    return app
