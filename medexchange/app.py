"""
MedExchange Messaging Server: Application Factory
"""

import time
import logging
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from medexchange import settings

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("medexchange-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="MedExchange Messaging Server")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# ── 3. Register routers ──
from medexchange.routers import health, messaging_api

app.include_router(health.router)
app.include_router(messaging_api.router)


# ── 4. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("MedExchange Messaging Server Starting")
    logger.info("Listening on port: %s", settings.PORT)
    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)

    # Messaging must be up before serving requests
    try:
        from medexchange.messaging.setup import initialize_messaging
        await initialize_messaging()
        logger.info("Messaging initialized")
    except Exception as e:
        logger.warning("Messaging failed to start, running without it: %s", e)


@app.on_event("shutdown")
async def shutdown_event():
    from medexchange.messaging.setup import shutdown_messaging
    await shutdown_messaging()
