import logging
from contextlib import asynccontextmanager

import redis.asyncio as redis
import sentry_sdk
from fastapi import FastAPI
from sqlalchemy import text

from bizinsights.config import settings
from bizinsights.database import engine

logging.basicConfig(
    level=logging.DEBUG if settings.ENVIRONMENT == "development" else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)

# Initialize Sentry
if settings.SENTRY_DSN:
    sentry_sdk.init(
        dsn=settings.SENTRY_DSN,
        environment=settings.ENVIRONMENT,
        traces_sample_rate=0.2 if settings.ENVIRONMENT == "production" else 1.0,
        profiles_sample_rate=0.1,
        send_default_pii=False,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    # Startup: verify DB connection and connect Redis
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))

    app.state.redis = redis.from_url(
        settings.REDIS_URL,
        decode_responses=True,
    )
    await app.state.redis.ping()

    yield

    # Shutdown
    await app.state.redis.close()
    await engine.dispose()


app = FastAPI(
    title="BizInsights API",
    version="0.1.0",
    lifespan=lifespan,
)

# Middleware
from fastapi.middleware.cors import CORSMiddleware  # noqa: E402

from bizinsights.middleware.rate_limit import RateLimitMiddleware  # noqa: E402

app.add_middleware(RateLimitMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.FRONTEND_URL],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

from bizinsights.middleware.error_handler import register_error_handlers  # noqa: E402

register_error_handlers(app)

# Routers
from bizinsights.routers.alerts import router as alerts_router  # noqa: E402
from bizinsights.routers.auth import router as auth_router  # noqa: E402
from bizinsights.routers.integrations import router as integrations_router  # noqa: E402
from bizinsights.routers.organizations import router as organizations_router  # noqa: E402
from bizinsights.routers.webhooks import router as webhooks_router  # noqa: E402

app.include_router(auth_router, prefix="/api")
app.include_router(organizations_router, prefix="/api")
app.include_router(integrations_router, prefix="/api")
app.include_router(webhooks_router, prefix="/api")
app.include_router(alerts_router, prefix="/api")


@app.get("/health")
async def health():
    return {"status": "ok"}
