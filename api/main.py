"""
FastAPI Application — payment intake, status and webhooks.

Provides:
- Payment intake into the batch work queue
- Stripe checkout webhook with signature verification
- Queue depth and processor statistics
- Pending reminder report
- Lifespan that owns the store, the queue, the processor and the scheduler
"""
from __future__ import annotations

import json
import structlog
from contextlib import asynccontextmanager
from typing import Any, Optional

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException, Request

from api.webhooks import WebhookSignatureError, verify_stripe_signature
from channels.email import EmailGateway, SmtpEmailGateway
from config.settings import Settings, get_settings
from database.session import create_engine_for, init_db, make_session_factory
from database.store_base import PersistenceGateway
from database.store_factory import create_store
from job_queue.processor import BatchProcessor
from job_queue.work_queue import WorkQueueUnavailable, create_work_queue
from models.schemas import PaymentRecordCreate, utcnow
from reminders.scheduler import ReminderScheduler
from utils.log_setup import configure_logging

logger = structlog.get_logger()


def _describe_payment(item: PaymentRecordCreate) -> dict[str, Any]:
    return {"user_id": item.user_id, "stripe_session_id": item.stripe_session_id}


# ══════════════════════════════════════════════════════════════
#  APP FACTORY
# ══════════════════════════════════════════════════════════════

def create_app(
    settings: Optional[Settings] = None,
    store: Optional[PersistenceGateway] = None,
    email: Optional[EmailGateway] = None,
) -> FastAPI:
    """
    Build the API. Collaborators are created in the lifespan from settings
    unless passed in, and are exposed on app.state.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        cfg = settings or get_settings()
        configure_logging(cfg.log_level, cfg.log_format)

        engine = None
        app_store = store
        if app_store is None:
            if cfg.database.store_backend == "sql":
                engine = create_engine_for(cfg.database.url, echo=cfg.debug)
                await init_db(engine)
                app_store = create_store(cfg.database, make_session_factory(engine))
            else:
                app_store = create_store(cfg.database)

        queue = create_work_queue(cfg.queue, PaymentRecordCreate)
        processor = BatchProcessor(queue, app_store.persist_payment, cfg.queue,
                                   describe=_describe_payment)
        scheduler = ReminderScheduler(app_store, email or SmtpEmailGateway(cfg.email),
                                      cfg.base_url, cfg.reminders)

        app.state.settings = cfg
        app.state.store = app_store
        app.state.work_queue = queue
        app.state.processor = processor
        app.state.scheduler = scheduler

        await processor.start_background()
        if cfg.reminders.enabled:
            await scheduler.start_background()

        logger.info("signdesk_worker_started",
                    store_backend=cfg.database.store_backend,
                    queue_backend=queue.backend,
                    reminders_enabled=cfg.reminders.enabled)
        yield

        await scheduler.stop()
        await processor.stop()
        await queue.close()
        await app_store.close()
        if engine is not None:
            await engine.dispose()
        logger.info("signdesk_worker_stopped")

    app = FastAPI(
        title="SignDesk Worker API",
        description="Payment batch processing and signature reminders",
        version="1.0.0",
        lifespan=lifespan,
    )
    _register_routes(app)
    return app


def _register_routes(app: FastAPI) -> None:

    # ── Health ────────────────────────────────────────────────

    @app.get("/health")
    async def health(request: Request):
        state = request.app.state
        return {
            "status": "healthy",
            "timestamp": utcnow().isoformat(),
            "processor_running": state.processor.running,
            "scheduler_running": state.scheduler.running,
        }

    # ── Payments ──────────────────────────────────────────────

    @app.post("/api/v1/payments", status_code=202)
    async def enqueue_payment(payment: PaymentRecordCreate, request: Request):
        queue = request.app.state.work_queue
        try:
            await queue.enqueue(payment)
            depth = await queue.len()
        except WorkQueueUnavailable as e:
            logger.error("payment_enqueue_failed", user_id=payment.user_id, error=str(e))
            raise HTTPException(503, "Work queue unavailable")
        return {"status": "queued", "depth": depth}

    @app.get("/api/v1/payments/queue")
    async def queue_status(request: Request):
        state = request.app.state
        try:
            snapshot = await state.work_queue.snapshot()
        except WorkQueueUnavailable as e:
            raise HTTPException(503, f"Work queue unavailable: {e}")
        snapshot["processor"] = state.processor.stats.to_dict()
        snapshot["processor_running"] = state.processor.running
        return snapshot

    # ── Stripe ────────────────────────────────────────────────

    @app.post("/api/v1/stripe/webhook")
    async def stripe_webhook(request: Request):
        state = request.app.state
        body = await request.body()

        secret = state.settings.stripe.webhook_secret
        if secret:
            try:
                verify_stripe_signature(
                    body,
                    request.headers.get("Stripe-Signature"),
                    secret,
                    state.settings.stripe.signature_tolerance_seconds,
                )
            except WebhookSignatureError as e:
                logger.warning("stripe_webhook_signature_invalid", error=str(e))
                raise HTTPException(400, "Invalid signature")

        try:
            event = json.loads(body)
        except json.JSONDecodeError:
            raise HTTPException(400, "Invalid JSON payload")
        if not isinstance(event, dict):
            raise HTTPException(400, "Invalid event payload")

        event_type = event.get("type", "")
        if event_type != "checkout.session.completed":
            logger.info("stripe_webhook_ignored", event_type=event_type)
            return {"received": True, "handled": False}

        data = event.get("data")
        session = data.get("object") if isinstance(data, dict) else None
        if not isinstance(session, dict):
            session = {}
        payment = PaymentRecordCreate.from_checkout_session(session)
        if payment is None:
            logger.warning("stripe_checkout_missing_user",
                           session_id=session.get("id"),
                           client_reference_id=session.get("client_reference_id"))
            return {"received": True, "handled": False}

        try:
            await state.work_queue.enqueue(payment)
        except WorkQueueUnavailable as e:
            # Non-2xx makes Stripe redeliver the event later
            logger.error("stripe_checkout_enqueue_failed",
                         session_id=payment.stripe_session_id, error=str(e))
            raise HTTPException(503, "Work queue unavailable")
        logger.info("stripe_checkout_enqueued",
                    session_id=payment.stripe_session_id,
                    user_id=payment.user_id,
                    amount_cents=payment.amount_cents)
        return {"received": True, "handled": True}

    # ── Reminders ─────────────────────────────────────────────

    @app.get("/api/v1/reminders/pending")
    async def pending_reminders(request: Request):
        scheduler = request.app.state.scheduler
        pending = await scheduler.preview()
        return {
            "count": len(pending),
            "last_pass": scheduler.last_summary.to_dict() if scheduler.last_summary else None,
            "pending": [
                {
                    "submitter_id": p.subject.id,
                    "email": p.subject.email,
                    "document": p.subject.document_name,
                    "reminder_count": p.subject.reminder_count,
                    "next_stage": p.next_stage,
                    "hours_since_created": p.hours_since_created,
                    "hours_until_next": p.hours_until_next,
                    "ready": p.ready,
                }
                for p in pending
            ],
        }


app = create_app()
