from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

import redis
import uvicorn
from fastapi import FastAPI

from roadlog.config import DATABASE_URL, DRAIN_ON_STARTUP, LOCAL_TZ, REDIS_URL
from roadlog.database import init_models, make_engine, make_sessionmaker
from roadlog.event_store import EventStore
from roadlog.geocode import NominatimReverseGeocoder
from roadlog.geozones import NamedPlaceCatalog
from roadlog.location import RedisLocationProvider
from roadlog.logging_config import get_logger
from roadlog.monitor import DrivingMonitor
from roadlog.notifications import RedisNotificationSink
from roadlog.pending import PendingEventDrain, PrimaryHeartbeat
from roadlog.tools import TripTools
from roadlog.visits import VisitDetector
from roadlog.webhook import router
from roadlog.worker import RedisActivityStream

logger = get_logger("main", "main.log")


@dataclass
class Services:
    redis: Any
    engine: Any
    store: EventStore
    catalog: NamedPlaceCatalog
    geocoder: Any
    location_provider: Any
    notifier: Any
    visits: VisitDetector
    monitor: DrivingMonitor
    tools: TripTools
    drain: PendingEventDrain
    stream: Optional[RedisActivityStream] = None


async def build_services(database_url: str = DATABASE_URL, redis_client=None, geocoder=None) -> Services:
    """Wire every component explicitly; nothing here is a process-wide singleton."""
    r = redis_client if redis_client is not None else redis.from_url(REDIS_URL, decode_responses=False)

    engine = make_engine(database_url)
    await init_models(engine)
    sessions = make_sessionmaker(engine)

    store = EventStore(sessions)
    catalog = NamedPlaceCatalog(sessions)
    await store.load()
    await catalog.load()

    geocoder = geocoder if geocoder is not None else NominatimReverseGeocoder()
    location_provider = RedisLocationProvider(r)
    notifier = RedisNotificationSink(r)
    visits = VisitDetector(store, catalog, geocoder)
    monitor = DrivingMonitor(
        store,
        location_provider=location_provider,
        notifier=notifier,
        visit_detector=visits,
        geocoder=geocoder,
        heartbeat=PrimaryHeartbeat(r),
        tz_name=LOCAL_TZ,
    )
    tools = TripTools(store, catalog, monitor=monitor, geocoder=geocoder, location_provider=location_provider)
    drain = PendingEventDrain(r, store)
    return Services(r, engine, store, catalog, geocoder, location_provider, notifier,
                    visits, monitor, tools, drain)


async def shutdown_services(s: Services) -> None:
    if s.stream is not None:
        s.stream.close()
    await s.monitor.stop()
    close = getattr(s.geocoder, "close", None)
    if close is not None:
        await close()
    await s.engine.dispose()


def create_app(services_factory=build_services, drain_on_startup: bool = DRAIN_ON_STARTUP,
               start_monitor: bool = True) -> FastAPI:

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        services = await services_factory()
        app.state.services = services
        if drain_on_startup:
            await services.drain.drain()
        if start_monitor:
            services.stream = RedisActivityStream(services.redis)
            services.monitor.start(services.stream)
        logger.info("roadlog started")
        try:
            yield
        finally:
            await shutdown_services(services)
            logger.info("roadlog stopped")

    app = FastAPI(title="roadlog", lifespan=lifespan)
    app.include_router(router)

    @app.get("/health")
    async def health():
        s = app.state.services
        return {
            "status": "healthy",
            "monitor": "running" if s.monitor.running else "stopped",
            "driving": s.monitor.is_driving,
            "events": len(s.store),
        }

    return app


app = create_app()

if __name__ == "__main__":
    uvicorn.run("roadlog.main:app", host="0.0.0.0", port=8000, reload=False)
