"""Inbound GitHub webhook handling: signature check, decoding, dispatch."""

from __future__ import annotations

import json
import time
from typing import Mapping, Optional, Tuple

from gidgethub import ValidationFailure, sansio
import pydantic
from sanic.log import logger

from cerberus.errors import DecodeError, SignatureError
from cerberus.github.model import (
    CheckRunEvent,
    IssueCommentEvent,
    PullRequestEvent,
    UnknownEvent,
    WebhookEvent,
)
from cerberus.metric import (
    error_counter,
    observe_webhook_processing_latency,
    webhook_counter,
    webhook_rejected_counter,
    webhook_skipped_counter,
)

SIGNATURE_HEADER = "X-Hub-Signature-256"
EVENT_HEADER = "X-GitHub-Event"
DELIVERY_HEADER = "X-GitHub-Delivery"

SIGNATURE_PREFIX = "sha256="

EVENT_MODELS = {
    "pull_request": PullRequestEvent,
    "check_run": CheckRunEvent,
    "issue_comment": IssueCommentEvent,
}


def verify_signature(body: bytes, secret: Optional[str], signature: Optional[str]) -> None:
    if not secret:
        return
    if not signature:
        raise SignatureError(f"Missing {SIGNATURE_HEADER} header")
    signature = signature.strip()
    if not signature.startswith(SIGNATURE_PREFIX):
        signature = SIGNATURE_PREFIX + signature
    try:
        sansio.validate_event(body, signature=signature, secret=secret)
    except ValidationFailure as exc:
        raise SignatureError(f"Webhook signature does not match: {exc}") from exc


def decode_event(
    event_type: str, body: bytes, delivery_id: Optional[str] = None
) -> WebhookEvent:
    try:
        payload = json.loads(body)
    except ValueError as exc:
        raise DecodeError(f"Malformed JSON payload: {exc}") from exc
    if not isinstance(payload, dict):
        raise DecodeError("Webhook payload is not a JSON object")

    model = EVENT_MODELS.get(event_type)
    if model is None:
        try:
            return UnknownEvent.model_validate(
                {**payload, "event": event_type, "delivery_id": delivery_id}
            )
        except pydantic.ValidationError:
            # we never act on these, the name is all we need
            logger.debug("Could not parse %s payload, keeping only the name", event_type)
            return UnknownEvent(event=event_type, delivery_id=delivery_id)

    try:
        event = model.model_validate(payload)
    except pydantic.ValidationError as exc:
        raise DecodeError(f"Invalid {event_type} payload: {exc}") from exc
    event.delivery_id = delivery_id
    return event


async def process_webhook(app, headers: Mapping[str, str], body: bytes) -> int:
    """Verify, decode and hand off a delivery, returning the HTTP status to answer.

    The aggregator only queues the event, so this never waits on GitHub.
    """
    start = time.perf_counter()
    status, result = await _process_webhook(app, headers, body)
    observe_webhook_processing_latency(
        event=headers.get(EVENT_HEADER) or "unknown",
        result=result,
        seconds=time.perf_counter() - start,
    )
    return status


async def _process_webhook(
    app, headers: Mapping[str, str], body: bytes
) -> Tuple[int, str]:
    delivery_id = headers.get(DELIVERY_HEADER)
    event_type = headers.get(EVENT_HEADER)

    try:
        verify_signature(
            body, app.config.GITHUB_WEBHOOK_SECRET, headers.get(SIGNATURE_HEADER)
        )
    except SignatureError as exc:
        webhook_rejected_counter.labels(reason="signature").inc()
        logger.warning("Rejecting delivery %s: %s", delivery_id, exc)
        return 401, "rejected"

    if not event_type:
        webhook_rejected_counter.labels(reason="missing_event").inc()
        logger.warning("Rejecting delivery %s: no %s header", delivery_id, EVENT_HEADER)
        return 400, "invalid"

    try:
        event = decode_event(event_type, body, delivery_id)
    except DecodeError as exc:
        webhook_rejected_counter.labels(reason="decode").inc()
        logger.warning("Rejecting delivery %s: %s", delivery_id, exc)
        return 400, "invalid"

    webhook_counter.labels(event=event_type).inc()

    if isinstance(event, UnknownEvent):
        webhook_skipped_counter.labels(event=event_type, reason="unsupported").inc()
        logger.debug("Ignoring unsupported event %s (%s)", event_type, delivery_id)
        return 200, "ignored"

    logger.debug("Dispatching event %s (%s)", event_type, delivery_id)
    try:
        await app.ctx.aggregator.submit(event)
    except Exception:  # noqa: BLE001
        error_counter.labels(context="event_dispatch").inc()
        logger.error("Exception raised when dispatching event", exc_info=True)
        return 200, "error"

    return 200, "ok"
