import logging
from contextlib import asynccontextmanager

from dotenv import load_dotenv

load_dotenv()

from fastapi import FastAPI, Request  # noqa: E402
from fastapi.responses import JSONResponse  # noqa: E402

from homeservice.api import admin, catalog, services, webhooks  # noqa: E402
from homeservice.db.init_db import init_db  # noqa: E402
from homeservice.errors import EngineError, InvariantViolation  # noqa: E402

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s", level=logging.INFO
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_db()
    yield


app = FastAPI(title="homeservice", lifespan=lifespan)


@app.exception_handler(EngineError)
async def engine_error_handler(request: Request, exc: EngineError):
    if isinstance(exc, InvariantViolation):
        logger.error("invariant violated on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(
        status_code=exc.status_code, content={"error": exc.kind, "detail": exc.message}
    )


@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=422, content={"error": "invalid_input", "detail": str(exc)})


@app.get("/health")
async def health_check():
    return {"status": "ok"}


app.include_router(catalog.router)
app.include_router(services.router)
app.include_router(webhooks.router)
app.include_router(admin.router)
