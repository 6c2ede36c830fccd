import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from edcare.config import CORS_ORIGINS, FHIR_BASE_URL
from edcare.database import close_db, init_db
from edcare.routers import doses, risk, schedule

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Starting ED intervention service (FHIR: %s)", FHIR_BASE_URL)
    await init_db()
    logger.info("Database initialized")
    yield
    await close_db()
    logger.info("ED intervention service shut down")


app = FastAPI(
    title="EDCare",
    description="ED-utilization risk and medication schedule service for SMART on FHIR clients",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(risk.router)
app.include_router(schedule.router)
app.include_router(doses.router)


@app.get("/health")
async def health():
    return {"status": "ok"}
