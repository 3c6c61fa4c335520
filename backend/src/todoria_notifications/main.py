from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .api import router
from .config import Settings, configure_logging, get_settings, runtime_secret_issues
from .runtime import NotificationRuntime, build_runtime

logger = logging.getLogger(__name__)


def _apply_secret_guard(settings: Settings) -> None:
    secret_issues = runtime_secret_issues(settings)
    if not secret_issues:
        return
    if settings.runtime_secret_guard_mode == "enforce":
        raise RuntimeError(
            "runtime secret guard blocked startup: "
            + "; ".join(secret_issues)
            + ". Remediation: set the missing secrets or switch RUNTIME_SECRET_GUARD_MODE to warn."
        )
    if settings.runtime_secret_guard_mode == "warn":
        for issue in secret_issues:
            logger.warning("runtime secret guard warning: %s", issue)


def create_app(runtime: NotificationRuntime | None = None) -> FastAPI:
    settings = runtime.settings if runtime is not None else get_settings()
    configure_logging(settings.log_level)
    _apply_secret_guard(settings)
    runtime = runtime or build_runtime(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if settings.scheduler_autostart:
            runtime.scheduler.start()
        try:
            yield
        finally:
            runtime.close()

    app = FastAPI(title=settings.app_name, version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.include_router(router, prefix=settings.api_prefix)
    return app


app = create_app()
