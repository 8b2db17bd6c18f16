import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from redis.asyncio import Redis

from config import settings
from models import async_session, engine, init_models
from api.manifolds import router as manifolds_router
from api.valves import router as valves_router
from api.events import router as events_router
from core.websocket import router as ws_router, snapshots_to_ws_bridge
from services.engine import ValveEngine
from services.fanout import SnapshotHub
from services.gateway import RedisDeviceChannel

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
)
logger = logging.getLogger("irrigation.main")

VERSION = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Irrigation backend starting... DEBUG=%s", settings.DEBUG)

    if settings.DB_CREATE_ALL:
        await init_models()

    # Redis
    redis = Redis.from_url(settings.REDIS_URL, decode_responses=False)
    app.state.redis = redis
    logger.info("Redis connected: %s", settings.REDIS_URL)

    # Valve engine (store, state machine, alarms, scheduler, gateway, fan-out)
    valve_engine = ValveEngine(async_session, redis, RedisDeviceChannel(redis))
    app.state.engine = valve_engine

    hub = SnapshotHub()
    app.state.hub = hub

    # Device traffic: commands out, status/telemetry/acks/presence in
    gateway_task = asyncio.create_task(valve_engine.gateway.start())

    # Schedule ticks
    scheduler_task = asyncio.create_task(valve_engine.scheduler.start())

    # Redis → WebSocket bridge
    ws_bridge_task = asyncio.create_task(snapshots_to_ws_bridge(redis, hub))

    yield

    # Shutdown
    logger.info("Irrigation backend shutting down...")
    await valve_engine.stop()

    all_tasks = [gateway_task, scheduler_task, ws_bridge_task]
    for t in all_tasks:
        t.cancel()
    for t in all_tasks:
        try:
            await t
        except asyncio.CancelledError:
            pass

    await redis.close()
    await engine.dispose()
    logger.info("Shutdown complete")


app = FastAPI(
    title="Irrigation Valve Control API",
    version=VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(manifolds_router)
app.include_router(valves_router)
app.include_router(events_router)
app.include_router(ws_router)


@app.get("/health")
async def health():
    return {"status": "ok", "version": VERSION}
