import asyncio
from contextlib import asynccontextmanager
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from mailrelay.core.logging import setup_logging
from mailrelay.core.broker import broker
from mailrelay.core.config import settings
from mailrelay.core.database import engine, async_session_maker, init_models
from mailrelay.api.employees import router as employees_router
from mailrelay.api.outbox import router as outbox_router
from mailrelay.api.health import router as health_router
from mailrelay.services.confirm_listener import ConfirmListener
from mailrelay.services.consumer import consumer
from mailrelay.services.retry_scheduler import RetryScheduler


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()

    await init_models(engine)

    broker.set_confirm_callback(ConfirmListener(async_session_maker).on_confirm)
    await broker.connect()
    asyncio.create_task(consumer.start())

    scheduler = RetryScheduler(async_session_maker, broker)
    await scheduler.start()

    yield

    await scheduler.stop()
    await consumer.stop()
    await broker.close()
    await engine.dispose()


app = FastAPI(
    title="Mail Relay",
    description="Outbox-backed welcome notification delivery",
    version="0.1.0",
    lifespan=lifespan
)

cors_origins = settings.cors_origins.split(",") if settings.cors_origins else ["*"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router)
app.include_router(employees_router)
app.include_router(outbox_router)
