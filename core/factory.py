"""
Dispatcher bootstrap — builds a DispatchOrchestrator from settings.

    orch = await create_dispatcher()          # settings.yaml + .env + env toggles
    result = await orch.dispatch(request)
    await orch.close()
"""
from __future__ import annotations

import structlog
from dotenv import load_dotenv

from channels import create_provider_adapter
from config.logging import configure_logging
from config.settings import Settings, get_settings
from core.orchestrator import DispatchOrchestrator
from core.pacing import PacingDelay
from core.rate_limiter import create_rate_limiter
from database.session import init_db
from database.store_factory import create_store
from job_queue.side_effects import SideEffectWorker

logger = structlog.get_logger()


async def create_dispatcher(settings: Settings = None) -> DispatchOrchestrator:
    if settings is None:
        load_dotenv()
        settings = get_settings()

    configure_logging(settings.log_level, json=settings.log_json)

    db = settings.database
    store = create_store({
        "store_backend": db.store_backend,
        "store_file_dir": db.store_file_dir,
    })
    if db.store_backend == "sql":
        await init_db(db.url)

    provider = await create_provider_adapter(settings.provider.type, settings.provider.credentials)

    rl = settings.rate_limit
    d = settings.dispatch
    orchestrator = DispatchOrchestrator(
        store=store,
        provider=provider,
        rate_limiter=create_rate_limiter(rl.backend, rl.redis_url, rl.window_seconds),
        pacing=PacingDelay(d.delay_min_ms, d.delay_max_ms),
        side_effects=SideEffectWorker(),
        enable_send=d.enable_send,
        rate_cap_per_minute=d.rate_cap_per_minute,
        rate_scope=rl.scope,
        dedup_lookback_seconds=d.dedup_lookback_seconds,
        provider_timeout_s=d.provider_timeout_s,
    )

    logger.info("dispatcher_ready",
                app=settings.app_name,
                store=db.store_backend,
                provider=settings.provider.type,
                rate_backend=rl.backend,
                enable_send=d.enable_send,
                rate_cap_per_minute=d.rate_cap_per_minute)
    return orchestrator
