from dotenv import load_dotenv
load_dotenv()

import logging
from fastapi import FastAPI, Depends
from fastapi.middleware.cors import CORSMiddleware

from database import close_client, get_db

# ENV
from config.env import ENV, CORS_ALLOWED_ORIGINS, LOG_LEVEL, MONGO_TRANSACTIONS, validate_production_env

# ROUTES
from routes.orders import router as orders_router
from routes.driver import router as driver_router
from routes.admin import router as admin_router
from routes.seller import router as seller_router
from routes.promotor import router as promotor_router

from utils.indexes import ensure_indexes

logging.basicConfig(
    level=LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("fastkart")

validate_production_env()
logger.info("Settlement API starting env=%s transactions=%s", ENV, MONGO_TRANSACTIONS)

IS_PRODUCTION = ENV == "production"

app = FastAPI(
    title="Fastkart Settlement API",
    description="Orders, delivery, commission settlement and payouts",
    version="1.0.0",
    docs_url=None if IS_PRODUCTION else "/docs",
    redoc_url=None if IS_PRODUCTION else "/redoc",
    openapi_url=None if IS_PRODUCTION else "/openapi.json",
)

# -----------------------------
# CORS
# -----------------------------
# Buyer, driver and back-office apps all call the same API.

DEV_ORIGINS = ["http://localhost:3000", "http://localhost:5173"]

app.add_middleware(
    CORSMiddleware,
    allow_origins=[o.strip() for o in CORS_ALLOWED_ORIGINS if o.strip()] or DEV_ORIGINS,
    allow_credentials=True,
    allow_methods=["GET", "POST", "PATCH"],
    allow_headers=["Authorization", "Content-Type"],
)

# -----------------------------
# ROUTES
# -----------------------------

for router in (orders_router, driver_router, admin_router, seller_router, promotor_router):
    app.include_router(router, prefix="/api")

# -----------------------------
# HEALTH CHECKS
# -----------------------------

@app.get("/api/health")
async def health():
    return {"status": "ok", "service": "settlement"}


@app.get("/api/health/db")
async def health_db(db=Depends(get_db)):
    await db.command("ping")
    return {"status": "mongodb connected", "transactions": MONGO_TRANSACTIONS}

# -----------------------------
# LIFECYCLE
# -----------------------------
# Payout batches and withdrawals are operator-triggered;
# nothing runs on a timer.

@app.on_event("startup")
async def prepare_indexes():
    await ensure_indexes(get_db())
    logger.info("Settlement indexes ensured")


@app.on_event("shutdown")
async def release_client():
    close_client()
