import logging
import sys
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from fastapi import Body, Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.responses import Response

import services
from config import settings
from dashboard import dashboard_stats
from database import Store, check_connection, get_store, isoformat_utc
from errors import GracelogError, InternalError, ValidationError
from schemas import CBMCalculation, ContactRequest, NewsletterRequest, QuickQuoteRequest, QuoteStatusUpdate

logger = logging.getLogger(__name__)
access_logger = logging.getLogger("gracelog.access")


def setup_logging() -> None:
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        handlers=[logging.StreamHandler(sys.stdout)],
    )
    logging.getLogger("pymongo").setLevel(logging.WARNING)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs method, path, status and duration of every request except health checks."""

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        if request.url.path == "/api/health":
            return await call_next(request)

        start_time = time.perf_counter()
        response = await call_next(request)
        duration_ms = (time.perf_counter() - start_time) * 1000

        status = response.status_code
        if status >= 500:
            log_level = logging.ERROR
        elif status >= 400:
            log_level = logging.WARNING
        else:
            log_level = logging.INFO
        access_logger.log(log_level, "%s %s %d %.1fms", request.method, request.url.path, status, duration_ms)
        return response


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    owns_store = getattr(app.state, "store", None) is None
    if owns_store:
        # The service keeps running when MongoDB is unreachable; writes fail with 503 until it comes back.
        app.state.store = Store.connect(
            settings.database_url,
            settings.database_name,
            settings.server_selection_timeout_ms,
        )
        await run_in_threadpool(check_connection, app.state.store)

    yield

    if owns_store:
        app.state.store.close()
        logger.info("MongoDB connection closed")


def register_exception_handlers(app: FastAPI) -> None:
    @app.exception_handler(GracelogError)
    async def gracelog_error_handler(request: Request, exc: GracelogError):
        if isinstance(exc, InternalError):
            content = exc.to_response(expose_detail=settings.is_development)
        else:
            content = exc.to_response()
        return JSONResponse(status_code=exc.status_code, content=content)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        missing, messages = [], []
        for err in exc.errors():
            loc = [str(part) for part in err.get("loc", ()) if part not in ("body", "query", "path")]
            field = ".".join(loc)
            if err.get("type") == "missing" and field:
                missing.append(field)
            messages.append(f"{field}: {err.get('msg')}" if field else str(err.get("msg")))
        error = ValidationError("Data validation error", missing_fields=missing, errors=messages)
        return JSONResponse(status_code=error.status_code, content=error.to_response())

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception):
        logger.error("Unexpected error on %s %s: %s", request.method, request.url.path, exc, exc_info=True)
        content: Dict[str, Any] = {"success": False, "message": "Internal server error"}
        if settings.is_development:
            content["error"] = str(exc)
        return JSONResponse(status_code=500, content=content)


def register_routes(app: FastAPI) -> None:
    @app.get("/")
    def read_root():
        return {"message": "Gracelog backend running"}

    @app.get("/api/health")
    def health(request: Request):
        store: Optional[Store] = getattr(request.app.state, "store", None)
        connected = store is not None and store.connected
        return {
            "status": "OK",
            "mongodb": "connected" if connected else "disconnected",
            "timestamp": isoformat_utc(datetime.now(timezone.utc)),
        }

    # --------- Quote Endpoints ---------
    @app.post("/api/quotes")
    def create_quote(payload: Dict[str, Any] = Body(...), store: Store = Depends(get_store)):
        return services.create_quote(store, payload)

    @app.get("/api/quotes")
    def list_quotes(
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        search: Optional[str] = Query(None),
        store: Store = Depends(get_store),
    ):
        return services.list_quotes(store, page=page, limit=limit, status=status, search=search)

    @app.put("/api/quotes/{quote_id}/status")
    def update_quote_status(quote_id: str, payload: QuoteStatusUpdate, store: Store = Depends(get_store)):
        return services.update_quote_status(store, quote_id, payload.status)

    # --------- CBM Calculation Endpoints ---------
    @app.post("/api/cbm-calculations")
    def create_calculation(calculation: CBMCalculation, request: Request, store: Store = Depends(get_store)):
        return services.create_calculation(
            store,
            calculation,
            ip_address=request.client.host if request.client else None,
            user_agent=request.headers.get("user-agent"),
        )

    @app.get("/api/cbm-calculations")
    def list_calculations(
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        store: Store = Depends(get_store),
    ):
        return services.list_calculations(store, page=page, limit=limit)

    # --------- Contact Endpoints ---------
    @app.post("/api/contacts")
    def create_contact(payload: ContactRequest, store: Store = Depends(get_store)):
        return services.create_contact(store, payload)

    @app.post("/api/quick-quote")
    def create_quick_quote(payload: QuickQuoteRequest, store: Store = Depends(get_store)):
        return services.create_quick_quote(store, payload)

    @app.get("/api/contacts")
    def list_contacts(
        page: Optional[str] = Query(None),
        limit: Optional[str] = Query(None),
        status: Optional[str] = Query(None),
        form_type: Optional[str] = Query(None, alias="formType"),
        store: Store = Depends(get_store),
    ):
        return services.list_contacts(store, page=page, limit=limit, status=status, form_type=form_type)

    # --------- Newsletter & Dashboard ---------
    @app.post("/api/newsletter")
    def subscribe(payload: NewsletterRequest, store: Store = Depends(get_store)):
        return services.subscribe(store, payload)

    @app.get("/api/dashboard/stats")
    def get_dashboard_stats(store: Store = Depends(get_store)):
        return dashboard_stats(store)


def create_app(store: Optional[Store] = None) -> FastAPI:
    """Builds the app. A given ``store`` is used as-is and never closed by the app."""
    app = FastAPI(title="Gracelog API", version="1.0.0", lifespan=lifespan)
    app.state.store = store

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    register_exception_handlers(app)
    register_routes(app)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.host, port=settings.port)
