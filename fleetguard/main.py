from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from fleetguard import config
from fleetguard.database import init_models, make_engine, make_sessionmaker
from fleetguard.escalation import EscalationEngine
from fleetguard.logging_config import get_logger
from fleetguard.monitor import MonitoringService
from fleetguard.notifier import HttpNotifier
from fleetguard.telemetry import HttpTelemetrySource
from fleetguard.webhook import router
from fleetguard.worker import AlarmQueue, AlarmWorker

logger = get_logger("main", "main.log")


def build_services(app: FastAPI, sessions, telemetry, notifier) -> MonitoringService:
    """Wire the monitoring components and expose them on ``app.state``."""
    engine = EscalationEngine(sessions, notifier)
    notifier.on_incoming_reply(engine.handle_reply)

    queue = AlarmQueue()
    worker = AlarmWorker(queue, sessions, engine, broadcaster=notifier)
    monitor = MonitoringService(sessions, telemetry, queue, worker, engine)

    app.state.sessions = sessions
    app.state.notifier = notifier
    app.state.monitor = monitor
    return monitor


@asynccontextmanager
async def lifespan(app: FastAPI):
    db_engine = make_engine(config.DATABASE_URL)
    await init_models(db_engine)

    telemetry = HttpTelemetrySource(
        config.TELEMETRY_API_URL, config.TELEMETRY_SECRET, timeout=config.TELEMETRY_TIMEOUT_S,
    )
    notifier = HttpNotifier(
        config.NOTIFY_GATEWAY_URL, config.NOTIFY_GATEWAY_TOKEN, country_code=config.DEFAULT_COUNTRY_CODE,
    )
    monitor = build_services(app, make_sessionmaker(db_engine), telemetry, notifier)
    monitor.start()
    logger.info("FleetGuard started")
    try:
        yield
    finally:
        await monitor.stop()
        await db_engine.dispose()
        logger.info("FleetGuard stopped")


app = FastAPI(title="FleetGuard", lifespan=lifespan)
app.include_router(router)


def run():
    uvicorn.run("fleetguard.main:app", host="0.0.0.0", port=8000, reload=False)


if __name__ == "__main__":
    run()
