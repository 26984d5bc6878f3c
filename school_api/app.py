import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import settings
from .database import get_database
from .errors import (
    ApplicationError,
    DatabaseConnectionError,
    DatabaseError,
    PoolClosedError,
    PoolTimeout,
    QueryTimeout,
)
from .models import init_school_schema
from .responses import failure
from .routes import routers


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    handlers=[logging.StreamHandler()],
)
logger = logging.getLogger(__name__)


def _log_loop_exception(loop: asyncio.AbstractEventLoop, context: dict) -> None:
    exc = context.get("exception")
    logger.error(f"Unhandled async error: {context.get('message')}" + (f": {exc!r}" if exc else ""))


@asynccontextmanager
async def lifespan(app: FastAPI):
    asyncio.get_running_loop().set_exception_handler(_log_loop_exception)
    try:
        logger.info("Initializing school schema...")
        await run_in_threadpool(init_school_schema)
        logger.info("School schema initialized.")
    except Exception as e:
        logger.error(f"Startup schema error: {e}")

    db = app.dependency_overrides.get(get_database, get_database)()
    await db.start()
    yield
    logger.info("Shutting down...")
    await db.shutdown()


app = FastAPI(title="School Management API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


DATABASE_ERROR_MESSAGES = {
    status.HTTP_409_CONFLICT: "Record conflicts with existing data",
    status.HTTP_503_SERVICE_UNAVAILABLE: "Database temporarily unavailable",
    status.HTTP_500_INTERNAL_SERVER_ERROR: "Database error",
}


def database_error_status(exc: DatabaseError) -> int:
    if isinstance(exc, ApplicationError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, (PoolTimeout, PoolClosedError, DatabaseConnectionError, QueryTimeout)):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=failure(str(exc.detail)),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    first = errors[0] if errors else {}
    field = ".".join(str(part) for part in first.get("loc", ())[1:])
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg", "Invalid request"))
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content=failure(message))


@app.exception_handler(DatabaseError)
async def database_error_handler(request: Request, exc: DatabaseError):
    code = database_error_status(exc)
    logger.error(f"{request.method} {request.url.path} failed with {type(exc).__name__}: {exc}")
    return JSONResponse(status_code=code, content=failure(DATABASE_ERROR_MESSAGES[code]))


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, content=failure("Internal server error"))


for router in routers:
    app.include_router(router)
