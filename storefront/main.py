from pathlib import Path

import structlog
from dotenv import load_dotenv
from fastapi import FastAPI, Header, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from storefront.database import Base, SessionLocal, engine
from storefront.errors import (
    ConcurrentModification, GatewayError, InsufficientStock, InvalidTransition, InvalidWebhook,
    NotFound, StorefrontError, ValidationError,
)
from storefront.gateway import get_gateway
from storefront.log import add_context, clear_context, configure_logging
from storefront.payments import PaymentReconciler
from storefront.routes import router

# Force-load .env (Windows-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

configure_logging()
logger = structlog.get_logger(__name__)

app = FastAPI(title="Storefront Order Engine")

app.include_router(router)

Base.metadata.create_all(bind=engine)

STATUS_CODES = (
    (ValidationError, 422),
    (NotFound, 404),
    (InsufficientStock, 409),
    (InvalidTransition, 409),
    (ConcurrentModification, 409),
    (GatewayError, 502),
)


def status_code_for(exc: StorefrontError) -> int:
    return next((code for family, code in STATUS_CODES if isinstance(exc, family)), 400)


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    code = status_code_for(exc)
    log = logger.error if code >= 500 else logger.info
    log("Request failed", error=exc.kind, detail=exc.detail, status_code=code)
    return JSONResponse(status_code=code, content={"error": exc.kind, "detail": exc.detail})


@app.middleware("http")
async def bind_request_context(request: Request, call_next):
    clear_context()
    add_context(method=request.method, path=request.url.path)
    return await call_next(request)


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: str = Header(None)):
    payload = await request.body()

    try:
        event = get_gateway().construct_event(payload, stripe_signature)
    except InvalidWebhook as exc:
        raise HTTPException(status_code=400, detail=exc.detail)

    # A ConcurrentModification answers 409; the provider redelivers and the
    # replay is reconciled idempotently.
    reconciler = PaymentReconciler(SessionLocal)
    await run_in_threadpool(reconciler.handle_event, event)

    return {"ok": True}
