"""
FastAPI application for the MoveMatch backend.
"""
import os
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from local .env before other imports that read os.getenv
_ENV_PATH = Path(__file__).resolve().parent / '.env'
if _ENV_PATH.exists():
    load_dotenv(dotenv_path=_ENV_PATH, override=False)

import contextvars
import logging
import time
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from .db import close as close_mongo
from .db import connect as connect_to_mongo
from .errors import MatchingError
from .logging_config import configure_logging
from .routers import matching
from .settings import get_settings

# Context variables for request-scoped logging
_ctx_request_id: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("request_id", default=None)
_ctx_client_ip: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("client_ip", default=None)
_ctx_path: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("path", default=None)
_ctx_method: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar("method", default=None)

# Install a LogRecord factory to automatically attach request context to LogRecords.
_original_factory = logging.getLogRecordFactory()


def _record_factory(*args, **kwargs):
    record = _original_factory(*args, **kwargs)
    for name, var in (
        ('request_id', _ctx_request_id),
        ('client_ip', _ctx_client_ip),
        ('path', _ctx_path),
        ('method', _ctx_method),
    ):
        value = var.get()
        if value is not None and not hasattr(record, name):
            setattr(record, name, value)
    return record


logging.setLogRecordFactory(_record_factory)

configure_logging()
settings = get_settings()


@asynccontextmanager
async def _lifespan(app: FastAPI):
    # startup
    await connect_to_mongo()
    try:
        yield
    finally:
        # shutdown
        await close_mongo()


app = FastAPI(title=settings.app_name,
              debug=settings.debug,
              version="1.0.0",
              root_path=os.getenv('BACKEND_ROOT_PATH', ''),
              docs_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/docs',
              redoc_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/redoc',
              openapi_url=None if os.getenv('DISABLE_DOCS', '0') == '1' else '/openapi.json',
              lifespan=_lifespan,
              redirect_slashes=False)


######## Structured Logging & Request ID Middleware ########
class RequestIDMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next):
        request_id = request.headers.get('X-Request-ID', str(uuid.uuid4()))
        # Extract client IP from X-Forwarded-For or remote
        xff = request.headers.get('X-Forwarded-For')
        if xff:
            client_ip = xff.split(',')[0].strip()
        else:
            # starlette request.client may be None in some test contexts
            client = getattr(request, 'client', None)
            client_ip = client.host if client else None
        request.state.request_id = request_id
        request.state.client_ip = client_ip
        _ctx_request_id.set(request_id)
        _ctx_client_ip.set(client_ip)
        _ctx_path.set(request.url.path)
        _ctx_method.set(request.method)
        start = time.time()
        logger = logging.getLogger('request')
        logger.info('request.start method=%s path=%s', request.method, request.url.path)
        try:
            response = await call_next(request)
        except Exception:
            logger.exception('request.error')
            raise
        duration_ms = int((time.time() - start) * 1000)
        response.headers['X-Request-ID'] = request_id
        logger.info('request.end status=%s dur_ms=%s', response.status_code, duration_ms)
        return response


app.add_middleware(RequestIDMiddleware)


######## Global Exception Handlers ########

@app.exception_handler(MatchingError)
async def matching_error_handler(request: Request, exc: MatchingError):
    logging.getLogger('app').info('matching.error code=%s status=%s detail=%s', exc.code, exc.status_code, exc.message)
    content = exc.to_dict()
    content['request_id'] = getattr(request.state, 'request_id', None)
    return JSONResponse(status_code=exc.status_code, content=content)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(status_code=422, content={
        'error': 'validation_error',
        'detail': exc.errors(),
        'request_id': getattr(request.state, 'request_id', None),
    })


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logging.getLogger('app').exception('unhandled exception rid=%s', getattr(request.state, 'request_id', None))
    return JSONResponse(status_code=500, content={
        'error': 'internal_server_error',
        'detail': 'An unexpected error occurred',
        'request_id': getattr(request.state, 'request_id', None),
    })


ALLOWED_ORIGINS = settings.allowed_origins
if ALLOWED_ORIGINS == '*':
    origins = ["*"]
else:
    origins = [o.strip() for o in ALLOWED_ORIGINS.split(',') if o.strip()]

# Browsers reject wildcard origins when allow_credentials is true.
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=settings.cors_allow_credentials and origins != ["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(matching.router, prefix="/matching", tags=["matching"])


# Fast healthcheck (no heavy DB access).
@app.get('/health', tags=["health"], include_in_schema=False)
async def health():
    return {"status": "ok"}
