"""Application entry point.

RUN:  python -m mkey_exporter.main
  or: uvicorn --factory mkey_exporter.main:create_app

Configuration comes from the environment (see core/config.py).  Bad
settings or rules stop the process before the HTTP listener starts.
"""

from __future__ import annotations

import logging
import sys
from collections.abc import AsyncGenerator, Sequence
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from mkey_exporter.api.health import router as health_router
from mkey_exporter.api.metrics_endpoint import router as metrics_router
from mkey_exporter.core.config import Settings, load_settings
from mkey_exporter.core.logging import setup_logging
from mkey_exporter.core.metrics import ExporterMetrics
from mkey_exporter.core.rules import load_rules
from mkey_exporter.db.pool import ClientPool, build_pool
from mkey_exporter.models.rules import RuleGroup
from mkey_exporter.services.refresh import RefreshLoop, lifespan_refresh

logger = logging.getLogger(__name__)


def create_app(
    settings: Settings | None = None,
    *,
    groups: Sequence[RuleGroup] | None = None,
    pool: ClientPool | None = None,
    metrics: ExporterMetrics | None = None,
) -> FastAPI:
    """Wire settings, rules, cache pool, metrics and the refresh loop into an app.

    Anything not passed in is built from settings, which is what tests use
    to plug in in-memory pools and pre-built rule groups.
    """
    if settings is None:
        settings = load_settings()
    if groups is None:
        groups = load_rules(settings.rules_path)
    if pool is None:
        pool = build_pool(settings)
    if metrics is None:
        metrics = ExporterMetrics()

    metrics.set_rules(groups)
    refresh_loop = RefreshLoop(
        host=settings.cache_host,
        pool=pool,
        groups=groups,
        metrics=metrics,
        interval=settings.refresh_secs,
    )

    @asynccontextmanager
    async def lifespan(app_: FastAPI) -> AsyncGenerator[None, None]:
        # The refresh task is stopped and joined before the app (and the
        # registry /metrics reads) goes away.
        async with lifespan_refresh(
            refresh_loop, pool, grace=settings.shutdown_grace_secs
        ) as task:
            app_.state.refresh_task = task
            yield

    app = FastAPI(
        title="mkey-exporter",
        lifespan=lifespan,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url="/redoc" if settings.is_dev else None,
    )
    app.state.settings = settings
    app.state.metrics = metrics
    app.state.refresh_loop = refresh_loop

    app.include_router(metrics_router)
    app.include_router(health_router)
    return app


def main() -> None:
    try:
        settings = load_settings()
    except ValueError as exc:
        setup_logging("info")
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    setup_logging(settings.log_level, json_format=settings.log_json)

    try:
        app = create_app(settings)
    except (ValueError, OSError) as exc:
        # RuleConfigError is a ValueError; OSError covers unreadable TLS files.
        logger.error("Invalid configuration: %s", exc)
        sys.exit(1)

    logger.info(
        "mkey-exporter starting  env=%s backend=%s host=%s bind=%s:%d refresh=%.0fs",
        settings.app_env,
        settings.cache_backend,
        settings.cache_host,
        settings.bind_host,
        settings.port,
        settings.refresh_secs,
    )
    uvicorn.run(app, host=settings.bind_host, port=settings.port, log_config=None)
    logger.info("mkey-exporter stopped")


if __name__ == "__main__":
    main()
