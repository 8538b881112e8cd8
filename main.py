"""
Billwatch - FastAPI Backend

Unbilled-work detection and client scope approval for contractors.

Run Instructions:
-----------------
1. Install dependencies:
   pip install -e .

2. Run the app locally with uvicorn:
   uvicorn main:app --host 0.0.0.0 --port 8000 --reload

3. Test /health endpoint:
   curl http://localhost:8000/health

4. Emit a business event:
   curl -X POST http://localhost:8000/api/alerts/events \
     -H 'Content-Type: application/json' \
     -d '{"account_id": "acct-1", "event_type": "RECEIPT_CREATED", "source_id": "rcpt-1"}'
"""
import re
import time
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request

from billwatch import __version__
from billwatch.api import alerts_router, approvals_router, ops_router, scope_proofs_router
from billwatch.core.database import get_db
from billwatch.services.errors import BillwatchError, status_for
from billwatch.services.logging import log_error, log_request, logger
from billwatch.services.sweep import get_sweep_runner

app = FastAPI(
    title="Billwatch API",
    description="""
    Billwatch API - Unbilled Work Detection & Scope Approval

    ## Money alerts
    Business events (receipts, approved scope, voice logs, invoices) are checked
    for work that has not made it onto a sent invoice.

    ## Scope proofs
    Contractors request client sign-off on out-of-scope work. Clients approve
    or decline through a single-use link that expires after 24 hours.

    ## Authentication
    Set the `API_KEY` environment variable to require an `X-API-Key` header on
    contractor routes. The client approval link needs no key.
    """,
    version=__version__,
)

app.include_router(approvals_router)
app.include_router(scope_proofs_router)
app.include_router(alerts_router)
app.include_router(ops_router)

# Approval tokens are credentials and never reach the logs.
_APPROVAL_TOKEN_PATH = re.compile(r"(/api/scope-proofs/approve/)[^/]+")


def _loggable_path(request: Request) -> str:
    return _APPROVAL_TOKEN_PATH.sub(r"\1{token}", request.url.path)


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with its status and duration."""

    async def dispatch(self, request: Request, call_next):
        start_time = time.time()
        try:
            response = await call_next(request)
        except Exception as e:
            log_error("request_exception", str(e), {"path": _loggable_path(request), "method": request.method})
            raise
        log_request(
            method=request.method,
            path=_loggable_path(request),
            status_code=response.status_code,
            duration_ms=(time.time() - start_time) * 1000,
            account_id=request.query_params.get("account_id"),
        )
        return response


app.add_middleware(RequestLoggingMiddleware)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillwatchError)
async def billwatch_exception_handler(request: Request, exc: BillwatchError):
    """Handle all BillwatchErrors with structured responses."""
    status_code = status_for(exc)
    if status_code >= 500:
        log_error(exc.code.value, str(exc), exc.context)
    else:
        logger.info("%s %s rejected: %s", request.method, _loggable_path(request), exc.code.value)
    return JSONResponse(status_code=status_code, content=exc.to_dict())


@app.on_event("startup")
async def startup_event():
    """Create tables and start the sweep runner."""
    get_db().initialize()
    await get_sweep_runner().start()


@app.on_event("shutdown")
async def shutdown_event():
    await get_sweep_runner().stop()


@app.get("/health", tags=["System"])
async def health():
    """Health check. No authentication required."""
    return {
        "status": "healthy",
        "version": __version__,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "sweep": get_sweep_runner().get_status(),
    }
