"""
HTTP transport for the slot engine.

JSON routes map one-to-one onto SlotEngine operations; the Stripe webhook
route feeds payment confirmations back into the slot store.

The caller's role is taken from the ``X-Actor-Role`` header. Authentication
happens upstream (API gateway / Supabase auth) and is not handled here.
"""

import time
from typing import Any, Dict, Optional

import pydantic
from aiohttp import web
from aiohttp.web import Request, Response

from config import settings
from models.outcomes import ErrorKind, OperationError, failure
from models.schedule import DateRange, GenerationMode, WeeklyTemplate
from models.slot import ActorRole, BookingExtra, SlotCreate, SlotPatch
from payments import create_payment_intent, handle_webhook, verify_webhook_event
from scheduling.engine import SlotEngine, get_engine
from utils.datetime_utils import parse_iso_datetime
from utils.exceptions import DatabaseError, ValidationError, WebhookVerificationError
from utils.logging_config import setup_logging

logger = setup_logging(name=__name__, log_file="webhook.log")

ENGINE_KEY = web.AppKey("engine", SlotEngine)

MAX_REQUEST_BODY_SIZE = 1024 * 1024  # 1MB
_EVENT_ID_MAX_AGE = 86400  # 24 hours

ACTOR_ROLE_HEADER = "X-Actor-Role"

# HTTP status per outcome error kind
_ERROR_STATUS = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.ALREADY_BOOKED: 409,
    ErrorKind.INVALID_TRANSITION: 409,
    ErrorKind.HAS_LINKED_TRANSACTION: 409,
    ErrorKind.VALIDATION_FAILED: 422,
    ErrorKind.BACKING_STORE_UNAVAILABLE: 503,
}

# Stripe event id -> processing timestamp
_processed_event_ids: Dict[str, float] = {}

_health_metrics = {
    "total_events": 0,
    "failed_events": 0,
    "verification_failures": 0,
    "duplicate_events": 0,
    "start_time": time.time(),
}


# ========== Helpers ==========


async def _read_json(request: Request) -> Dict[str, Any]:
    """Read a JSON object body. An empty body is an empty object."""
    if not request.can_read_body:
        return {}
    try:
        body = await request.json()
    except ValueError as e:
        raise ValidationError(f"Request body is not valid JSON: {e}") from e
    if not isinstance(body, dict):
        raise ValidationError("Request body must be a JSON object")
    return body


def _actor_role(request: Request, default: ActorRole = ActorRole.CLIENT) -> ActorRole:
    raw = request.headers.get(ACTOR_ROLE_HEADER)
    if not raw:
        return default
    try:
        return ActorRole(raw.strip().lower())
    except ValueError as e:
        raise ValidationError(f"Unknown actor role: {raw}") from e


def _query_datetime(request: Request, name: str) -> Any:
    value = request.query.get(name)
    if not value:
        raise ValidationError(f"Missing query parameter: {name}")
    return parse_iso_datetime(value)


def _engine(request: Request) -> SlotEngine:
    return request.app[ENGINE_KEY]


def _outcome_response(outcome: Any, success_status: int = 200) -> Response:
    """Serialize a typed outcome, choosing the status from its error kind."""
    body = outcome.model_dump(mode="json")
    if outcome.success:
        return web.json_response(body, status=success_status)
    status = _ERROR_STATUS.get(ErrorKind(outcome.error.kind), 400) if outcome.error else 400
    return web.json_response(body, status=status)


def _error_response(error: OperationError) -> Response:
    return web.json_response(
        {"success": False, "error": error.model_dump(mode="json")},
        status=_ERROR_STATUS.get(ErrorKind(error.kind), 400),
    )


@web.middleware
async def error_middleware(request: Request, handler):
    """Turn bad input into validation_failed responses instead of 500s."""
    try:
        return await handler(request)
    except pydantic.ValidationError as e:
        details = {
            "errors": e.errors(include_url=False, include_context=False, include_input=False)
        }
        return _error_response(
            OperationError(
                kind=ErrorKind.VALIDATION_FAILED,
                message="Invalid request payload",
                details=details,
            )
        )
    except (ValidationError, ValueError) as e:
        return _error_response(failure(ErrorKind.VALIDATION_FAILED, str(e)))


@web.middleware
async def security_headers_middleware(request: Request, handler):
    """Add security headers to all responses."""
    response = await handler(request)

    response.headers["X-Content-Type-Options"] = "nosniff"
    response.headers["X-Frame-Options"] = "DENY"
    response.headers["Strict-Transport-Security"] = "max-age=31536000; includeSubDomains"

    if request.path.startswith("/webhook/"):
        response.headers["Allow"] = "POST"

    return response


# ========== Slot routes ==========


async def generate_slots_handler(request: Request) -> Response:
    """POST /slots/generate: expand a weekly template into stored slots."""
    body = await _read_json(request)
    template = WeeklyTemplate(**body.get("template", {}))
    date_range = DateRange(**body.get("date_range", {}))
    mode = GenerationMode(body.get("mode", GenerationMode.APPEND.value))

    outcome = await _engine(request).generate_slots(template, date_range, mode)
    return _outcome_response(outcome, success_status=201 if outcome.created_count else 200)


async def preview_slots_handler(request: Request) -> Response:
    """POST /slots/preview: per-day counts without writing anything."""
    body = await _read_json(request)
    template = WeeklyTemplate(**body.get("template", {}))
    date_range = DateRange(**body.get("date_range", {}))
    return _outcome_response(_engine(request).preview_slots(template, date_range))


async def available_slots_handler(request: Request) -> Response:
    """GET /slots/available?service_id=&start=&end=[&practitioner_id=]"""
    service_id = request.query.get("service_id")
    if not service_id:
        raise ValidationError("Missing query parameter: service_id")

    outcome = await _engine(request).available_slots(
        service_id,
        _query_datetime(request, "start"),
        _query_datetime(request, "end"),
        request.query.get("practitioner_id"),
    )
    return _outcome_response(outcome)


async def check_conflict_handler(request: Request) -> Response:
    """POST /slots/conflicts"""
    body = await _read_json(request)
    for field in ("practitioner_id", "service_id", "start_time", "end_time"):
        if not body.get(field):
            raise ValidationError(f"Missing field: {field}")

    outcome = await _engine(request).check_conflict(
        body["practitioner_id"],
        body["service_id"],
        parse_iso_datetime(body["start_time"]),
        parse_iso_datetime(body["end_time"]),
        body.get("exclude_id"),
    )
    return _outcome_response(outcome)


async def create_slot_handler(request: Request) -> Response:
    """POST /slots"""
    data = SlotCreate(**await _read_json(request))
    role = _actor_role(request, ActorRole.PRACTITIONER)
    outcome = await _engine(request).create_slot(data, role)
    return _outcome_response(outcome, success_status=201)


async def book_slot_handler(request: Request) -> Response:
    """POST /slots/{slot_id}/book"""
    body = await _read_json(request)
    client_id = body.pop("client_id", None)
    if not client_id:
        raise ValidationError("Missing field: client_id")

    extra = BookingExtra(**body)
    outcome = await _engine(request).book(request.match_info["slot_id"], client_id, extra)
    return _outcome_response(outcome)


async def edit_slot_handler(request: Request) -> Response:
    """PATCH /slots/{slot_id}"""
    patch = SlotPatch(**await _read_json(request))
    role = _actor_role(request, ActorRole.PRACTITIONER)
    outcome = await _engine(request).edit_slot(request.match_info["slot_id"], patch, role)
    return _outcome_response(outcome)


async def cancel_slot_handler(request: Request) -> Response:
    """POST /slots/{slot_id}/cancel"""
    body = await _read_json(request)
    role = _actor_role(request)
    outcome = await _engine(request).cancel(
        request.match_info["slot_id"], role, keep_history=bool(body.get("keep_history", False))
    )
    return _outcome_response(outcome)


async def complete_slot_handler(request: Request) -> Response:
    """POST /slots/{slot_id}/complete"""
    outcome = await _engine(request).complete(request.match_info["slot_id"])
    return _outcome_response(outcome)


async def delete_slot_handler(request: Request) -> Response:
    """DELETE /slots/{slot_id}"""
    role = _actor_role(request, ActorRole.PRACTITIONER)
    outcome = await _engine(request).delete_slot(request.match_info["slot_id"], role)
    return _outcome_response(outcome)


async def payment_intent_handler(request: Request) -> Response:
    """POST /slots/{slot_id}/payment-intent: start payment for a booked slot."""
    slot_id = request.match_info["slot_id"]
    engine = _engine(request)

    try:
        slot = await engine.db.get_slot_by_id(slot_id)
        if slot is None:
            return _error_response(failure(ErrorKind.NOT_FOUND, f"Slot {slot_id} not found"))
        price = slot.custom_price
        if price is None:
            service = await engine.db.get_service_by_id(slot.service_id)
            price = service.price if service else None
    except DatabaseError as e:
        logger.error(f"Store error preparing payment for slot {slot_id}: {e}")
        return _error_response(failure(ErrorKind.BACKING_STORE_UNAVAILABLE, str(e)))

    if not slot.client_id:
        return _error_response(
            failure(ErrorKind.INVALID_TRANSITION, f"Slot {slot_id} is not booked")
        )
    if not price:
        return _error_response(
            failure(ErrorKind.VALIDATION_FAILED, f"Slot {slot_id} has no price to charge")
        )

    try:
        intent = await create_payment_intent(slot, price)
    except RuntimeError as e:
        return web.json_response(
            {"success": False, "error": {"kind": "payment_failed", "message": str(e)}},
            status=502,
        )

    return web.json_response(
        {"success": True, "payment_intent_id": intent.id, "client_secret": intent.client_secret},
        status=201,
    )


async def reap_handler(request: Request) -> Response:
    """POST /practitioners/{practitioner_id}/reap"""
    outcome = await _engine(request).reap(request.match_info["practitioner_id"])
    return _outcome_response(outcome)


# ========== Stripe webhook ==========


def _check_and_mark_idempotency(event_id: str) -> bool:
    """
    Check if event has already been processed and mark it if not.

    Returns:
        True if event was already processed, False if newly marked
    """
    now = time.time()
    for expired in [k for k, ts in _processed_event_ids.items() if now - ts > _EVENT_ID_MAX_AGE]:
        _processed_event_ids.pop(expired, None)

    if event_id in _processed_event_ids:
        return True

    _processed_event_ids[event_id] = now
    return False


async def stripe_webhook_handler(request: Request) -> Response:
    """
    Handle Stripe webhook events.

    Verifies the signature, drops duplicate deliveries and forwards the
    event to the payment confirmation handler.
    """
    raw_body = await request.read()
    if len(raw_body) > MAX_REQUEST_BODY_SIZE:
        logger.warning(f"Request body too large: {len(raw_body)} bytes")
        return web.json_response(
            {"status": "error", "error": "request_too_large"}, status=413
        )
    if not raw_body:
        return web.json_response(
            {"status": "error", "error": "empty_payload", "message": "Empty payload"},
            status=400,
        )

    try:
        event = verify_webhook_event(raw_body, request.headers.get("Stripe-Signature"))
    except WebhookVerificationError as e:
        logger.warning(f"Webhook signature verification failed: {e}")
        _health_metrics["verification_failures"] += 1
        return web.json_response(
            {
                "status": "error",
                "error": "verification_failed",
                "message": "Invalid webhook signature",
            },
            status=401,
        )

    event_id: Optional[str] = event.get("id")
    event_type: Optional[str] = event.get("type")
    if not event_id or not event_type:
        return web.json_response(
            {"status": "error", "error": "validation_failed", "message": "Missing id or type"},
            status=400,
        )

    logger.info(f"Received Stripe webhook: event_id={event_id}, type={event_type}")
    _health_metrics["total_events"] += 1

    if _check_and_mark_idempotency(event_id):
        _health_metrics["duplicate_events"] += 1
        logger.info(f"Duplicate webhook event {event_id} ignored")
        return web.json_response(
            {"status": "success", "message": "Event already processed", "event_id": event_id}
        )

    try:
        result = await handle_webhook(event)
    except Exception as e:
        # Let Stripe redeliver
        _processed_event_ids.pop(event_id, None)
        _health_metrics["failed_events"] += 1
        logger.error(f"Unexpected webhook error for {event_id}: {e}", exc_info=True)
        return web.json_response(
            {
                "status": "error",
                "error": "processing_failed",
                "message": "Internal server error while processing webhook",
            },
            status=500,
        )

    return web.json_response(
        {"status": "success", "event_id": event_id, "event_type": event_type, "result": result}
    )


async def health_check(request: Request) -> Response:
    """Health check endpoint with webhook counters."""
    uptime_hours = (time.time() - _health_metrics["start_time"]) / 3600
    return web.json_response(
        {
            "status": "ok",
            "service": "slot-engine",
            "environment": settings.environment,
            "uptime_hours": round(uptime_hours, 2),
            "metrics": {
                "total_events": _health_metrics["total_events"],
                "failed_events": _health_metrics["failed_events"],
                "verification_failures": _health_metrics["verification_failures"],
                "duplicate_events": _health_metrics["duplicate_events"],
            },
            "configuration": {
                "webhook_secret_configured": bool(settings.stripe_webhook_secret),
                "notifications_enabled": settings.notifications_enabled,
            },
        }
    )


def create_app(engine: Optional[SlotEngine] = None) -> web.Application:
    """
    Create aiohttp application with middleware and routes.

    Args:
        engine: Engine to serve; the shared one by default
    """
    app = web.Application(
        middlewares=[security_headers_middleware, error_middleware],
        client_max_size=MAX_REQUEST_BODY_SIZE,
    )
    app[ENGINE_KEY] = engine or get_engine()

    app.router.add_get("/health", health_check)
    app.router.add_post("/webhook/stripe", stripe_webhook_handler)

    app.router.add_post("/slots", create_slot_handler)
    app.router.add_post("/slots/generate", generate_slots_handler)
    app.router.add_post("/slots/preview", preview_slots_handler)
    app.router.add_get("/slots/available", available_slots_handler)
    app.router.add_post("/slots/conflicts", check_conflict_handler)
    app.router.add_patch("/slots/{slot_id}", edit_slot_handler)
    app.router.add_delete("/slots/{slot_id}", delete_slot_handler)
    app.router.add_post("/slots/{slot_id}/book", book_slot_handler)
    app.router.add_post("/slots/{slot_id}/cancel", cancel_slot_handler)
    app.router.add_post("/slots/{slot_id}/complete", complete_slot_handler)
    app.router.add_post("/slots/{slot_id}/payment-intent", payment_intent_handler)
    app.router.add_post("/practitioners/{practitioner_id}/reap", reap_handler)

    return app
