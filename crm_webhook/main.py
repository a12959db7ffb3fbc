import logging
from contextlib import asynccontextmanager
from typing import Optional
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, Header, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from sqlalchemy.exc import SQLAlchemyError

from crm_webhook.config import AckPolicy, Settings
from crm_webhook.consumer import WebhookPipeline, parse_envelope
from crm_webhook.database import create_engine, init_db, make_session_factory, ping
from crm_webhook.forwarding import CrmForwarder
from crm_webhook.persistence import PaymentPersister, PersistenceError
from crm_webhook.signature import SignatureVerifier
from crm_webhook.slabs import SlabClassifier
from crm_webhook.worker import BackgroundWorker

logger = logging.getLogger(__name__)

router = APIRouter()


def configure_logging(level: str = "INFO"):
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings: Settings = app.state.settings
    engine = create_engine(settings, **app.state.engine_options)
    if settings.auto_create_tables:
        await init_db(engine)

    forwarder = None
    if settings.crm_api_url:
        forwarder = CrmForwarder(settings.crm_api_url, settings.crm_api_key, settings.crm_timeout)

    app.state.engine = engine
    app.state.worker = BackgroundWorker()
    app.state.pipeline = WebhookPipeline(
        persister=PaymentPersister(make_session_factory(engine), timeout=settings.db_timeout),
        classifier=app.state.classifier,
        qualifying_statuses=settings.qualifying_statuses,
        forwarder=forwarder,
        default_currency=settings.default_currency,
        display_timezone=settings.display_timezone,
    )
    logger.info("Razorpay webhook receiver ready (ack_policy=%s, crm_forwarding=%s)",
                settings.ack_policy.value, bool(forwarder))
    try:
        yield
    finally:
        await app.state.worker.drain(settings.shutdown_drain_timeout)
        if forwarder is not None:
            await forwarder.close()
        await engine.dispose()
        logger.info("Razorpay webhook receiver stopped")


def get_pipeline(request: Request) -> WebhookPipeline:
    return request.app.state.pipeline


def get_worker(request: Request) -> BackgroundWorker:
    return request.app.state.worker


@router.post("/razorpay-webhook")
async def razorpay_webhook(
    request: Request,
    x_razorpay_signature: Optional[str] = Header(None),
    pipeline: WebhookPipeline = Depends(get_pipeline),
    worker: BackgroundWorker = Depends(get_worker),
):
    logger.info("WEBHOOK received")
    raw_body = await request.body()

    verifier: SignatureVerifier = request.app.state.verifier
    if not verifier.verify(raw_body, x_razorpay_signature):
        return PlainTextResponse("Invalid signature", status_code=400)

    envelope = parse_envelope(raw_body)
    if envelope is None:
        return PlainTextResponse("OK", status_code=200)

    settings: Settings = request.app.state.settings
    if settings.ack_policy is AckPolicy.DEFERRED:
        worker.submit(pipeline.process_detached(envelope), name=f"ingest:{envelope.event}")
        return PlainTextResponse("OK", status_code=200)

    try:
        await pipeline.process(envelope)
    except PersistenceError as e:
        logger.error("persistence failure payment_id=%s table=%s: %s", e.payment_id, e.table, e.reason)
        return PlainTextResponse("Storage error", status_code=500)
    return PlainTextResponse("OK", status_code=200)


@router.get("/razorpay-webhook", response_class=PlainTextResponse)
async def webhook_status():
    return "Razorpay Webhook Active (CRM)"


@router.get("/", response_class=PlainTextResponse)
async def read_root():
    return "Razorpay Webhook Active (CRM)"


@router.get("/db-test")
async def db_test(request: Request):
    try:
        await ping(request.app.state.engine)
    except (SQLAlchemyError, OSError) as e:
        logger.error("Database probe failed: %s", e)
        return JSONResponse({"status": "error"}, status_code=503)
    return {"status": "ok"}


def create_app(settings: Optional[Settings] = None, **engine_options) -> FastAPI:
    """Build the app; raises ConfigurationError before anything is served."""
    settings = settings or Settings.from_env()
    app = FastAPI(title="Razorpay CRM Webhook", lifespan=lifespan)
    app.state.settings = settings
    app.state.engine_options = engine_options
    app.state.verifier = SignatureVerifier(settings.webhook_secret)
    app.state.classifier = SlabClassifier(settings.slab_micro_max, settings.slab_standard_max)
    app.include_router(router)
    return app


def run():
    settings = Settings.from_env()
    configure_logging(settings.log_level)
    uvicorn.run(create_app(settings), host=settings.host, port=settings.port)


if __name__ == "__main__":
    run()
