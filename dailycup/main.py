from contextlib import asynccontextmanager
import logging

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from . import db as database
from .api import audit, cod, couriers, geocode, orders, tracking, webhooks
from .config import get_settings
from .errors import DomainError
from .metrics import router as metrics_router
from .worker import start_worker, stop_worker

settings = get_settings()

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if settings.AUTO_CREATE_TABLES:
        database.Base.metadata.create_all(bind=database.engine)
    if settings.GEOCODE_WORKER_ENABLED:
        start_worker(settings)
    yield
    stop_worker()


app = FastAPI(title="DailyCup Fulfillment", version="1.0", lifespan=lifespan)

# CORS
origins = ["*"] if settings.CORS_ORIGIN == "*" else [o.strip() for o in settings.CORS_ORIGIN.split(",")]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    headers = None
    if "retry_after_seconds" in exc.details:
        headers = {"Retry-After": str(exc.details["retry_after_seconds"])}
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict(), headers=headers)


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": [str(p) for p in e.get("loc", ())], "msg": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"success": False, "message": "Invalid request", "errors": errors})


app.include_router(orders.router)
app.include_router(tracking.router)
app.include_router(geocode.router)
app.include_router(webhooks.router)
app.include_router(cod.router)
app.include_router(couriers.router)
app.include_router(audit.router)
if settings.METRICS_ENABLED:
    app.include_router(metrics_router)


@app.get("/health")
def health():
    return {"ok": True}
