import base64
import binascii
import hashlib
import hmac
import time
from typing import Mapping

from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from essence.core.config import Settings
from essence.core.errors import SignatureError, WebhookMappingError
from essence.schemas.webhook import decode_webhook_body
from essence.services import job_service
from essence.services.job_events import JobEventHub
from essence.services.job_service import WebhookOutcome
from essence.services.outbox import Outbox


def _secret_key(secret: str) -> bytes:
    encoded = secret.split('_', 1)[1] if secret.startswith('whsec_') else secret
    try:
        return base64.b64decode(encoded)
    except (binascii.Error, ValueError):
        raise SignatureError('Webhook secret is not valid base64')


def sign_webhook(secret: str, msg_id: str, timestamp: str, body: bytes) -> str:
    signed = f'{msg_id}.{timestamp}.'.encode() + body
    digest = hmac.new(_secret_key(secret), signed, hashlib.sha256).digest()
    return base64.b64encode(digest).decode()


def verify_webhook_signature(
        *,
        secret: str,
        headers: Mapping[str, str],
        body: bytes,
        tolerance_seconds: int = 300,
        now: float | None = None
) -> None:
    """
    Standard Webhooks verification as used by Replicate.

    webhook-signature may carry several space separated "v1,<base64>" entries;
    any match is accepted.
    """
    msg_id = headers.get('webhook-id')
    timestamp = headers.get('webhook-timestamp')
    signature = headers.get('webhook-signature')

    if not msg_id or not timestamp or not signature:
        raise SignatureError('Missing webhook signature headers')

    try:
        sent_at = int(timestamp)
    except ValueError:
        raise SignatureError('Invalid webhook timestamp')

    now = time.time() if now is None else now
    if abs(now - sent_at) > tolerance_seconds:
        raise SignatureError('Webhook timestamp outside the tolerance window')

    expected = sign_webhook(secret, msg_id, timestamp, body)

    for entry in signature.split():
        version, _, value = entry.partition(',')
        if version == 'v1' and hmac.compare_digest(value, expected):
            return

    raise SignatureError('Invalid webhook signature')


async def ingest_webhook(
        *,
        db: AsyncSession,
        kind: str,
        body: bytes,
        headers: Mapping[str, str],
        settings: Settings,
        outbox: Outbox | None = None,
        events: JobEventHub | None = None
) -> WebhookOutcome:
    """
    Verify, parse and apply one provider notification. Raises SignatureError
    or ValidationError before anything is written.
    """
    if settings.REPLICATE_WEBHOOK_SECRET:
        verify_webhook_signature(
            secret=settings.REPLICATE_WEBHOOK_SECRET,
            headers=headers,
            body=body,
            tolerance_seconds=settings.WEBHOOK_TOLERANCE_SECONDS,
        )
    else:
        logger.warning('[webhook] REPLICATE_WEBHOOK_SECRET is not set, skipping signature verification')

    try:
        event = decode_webhook_body(body)
    except WebhookMappingError as e:
        logger.warning(f'[webhook] {kind} payload could not be mapped: {e.message}')
        return WebhookOutcome(action='unmapped')

    logger.info(f'[webhook] {kind} event {event.id} status={event.status}')

    outcome = await job_service.apply_webhook_event(db=db, event=event, outbox=outbox, events=events)

    if outcome.job_id and outcome.action == 'applied':
        job = await job_service.get_job(db=db, job_id=outcome.job_id)
        if job.kind != kind:
            logger.warning(f'[webhook] {kind} webhook delivered for {job.kind} job {job.id}')

    return outcome
