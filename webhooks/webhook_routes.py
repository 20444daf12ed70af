from __future__ import annotations

import hmac
import json
import logging
import time
from typing import Any, Dict, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request, status
from pydantic import ValidationError as PayloadValidationError

from dispatch.enqueue import get_extraction_dispatcher
from entities.resolver import get_entity_resolver
from metrics.aggregator import get_state_machine
from settings.config import settings
from settings.errors import AuthorizationError, PipelineError, ValidationError
from webhooks.callback_processor import (
    CallbackProcessor,
    ClassificationCallbackProcessor,
    process_classification_in_new_session,
    process_extraction_in_new_session,
)
from webhooks.schemas import ClassificationCallback, WebhookAccepted

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def verify_webhook(
    request: Request,
    x_webhook_secret: Optional[str] = Header(default=None),
    x_webhook_timestamp: Optional[str] = Header(default=None),
) -> None:
    """
    Shared-secret check plus a timestamp window (epoch milliseconds) against replays.
    """
    if not x_webhook_secret or not hmac.compare_digest(x_webhook_secret, settings.WEBHOOK_SECRET):
        logger.warning("Webhook rejected: bad secret", extra={"path": request.url.path})
        raise AuthorizationError("Invalid webhook secret")
    try:
        sent_ms = int(x_webhook_timestamp)
    except (TypeError, ValueError):
        raise AuthorizationError("Missing or invalid X-Webhook-Timestamp")
    if abs(time.time() * 1000 - sent_ms) > settings.WEBHOOK_MAX_SKEW_SECONDS * 1000:
        logger.warning("Webhook rejected: stale timestamp", extra={"path": request.url.path})
        raise AuthorizationError("Webhook timestamp outside the allowed window")


async def read_json_body(request: Request) -> Dict[str, Any]:
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.WEBHOOK_MAX_BODY_BYTES:
        raise PipelineError("Payload too large", status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)
    body = await request.body()
    if len(body) > settings.WEBHOOK_MAX_BODY_BYTES:
        raise PipelineError("Payload too large", status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE)
    try:
        data = json.loads(body)
    except ValueError:
        raise ValidationError("Body is not valid JSON")
    if not isinstance(data, dict):
        raise ValidationError("Body must be a JSON object")
    return data


def get_callback_processor() -> CallbackProcessor:
    return CallbackProcessor(get_state_machine(), get_entity_resolver())


def get_classification_processor() -> ClassificationCallbackProcessor:
    return ClassificationCallbackProcessor(get_state_machine(), get_extraction_dispatcher())


@router.post(
    "/extraction",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=WebhookAccepted,
    dependencies=[Depends(verify_webhook)],
)
async def extraction_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: CallbackProcessor = Depends(get_callback_processor),
):
    raw = await read_json_body(request)
    # schema problems are recorded against the file, not returned to the extraction service
    background_tasks.add_task(process_extraction_in_new_session, processor, raw)
    logger.info("Extraction callback accepted", extra={"file_id": str(raw.get("file_id"))})
    return WebhookAccepted()


@router.post(
    "/classification",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=WebhookAccepted,
    dependencies=[Depends(verify_webhook)],
)
async def classification_callback(
    request: Request,
    background_tasks: BackgroundTasks,
    processor: ClassificationCallbackProcessor = Depends(get_classification_processor),
):
    raw = await read_json_body(request)
    try:
        callback = ClassificationCallback.model_validate(raw)
    except PayloadValidationError as exc:
        raise ValidationError(f"Invalid classification callback: {exc.errors()[0]['msg']}")
    background_tasks.add_task(process_classification_in_new_session, processor, callback)
    return WebhookAccepted()
