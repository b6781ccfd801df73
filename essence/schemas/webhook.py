"""
Provider webhook payloads.

Replicate posts the whole prediction object on every event. The payload is
parsed into one variant per recognised status; anything else becomes an
UnknownEvent so callers can log and acknowledge it without touching state.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Any, Dict, Literal, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from essence.core.errors import WebhookMappingError


class _Event(BaseModel):
    model_config = ConfigDict(extra='ignore')

    id: str = Field(min_length=1)
    input: Any = None
    logs: str | None = None
    metrics: Any = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    # raw provider payload, kept for dead-letter parking
    raw: Dict[str, Any] = Field(default_factory=dict, exclude=True)

    @property
    def predict_time(self) -> float | None:
        if not isinstance(self.metrics, dict):
            return None
        value = self.metrics.get('predict_time')
        try:
            return float(value) if value is not None else None
        except (TypeError, ValueError):
            return None


class StartingEvent(_Event):
    status: Literal['starting']


class ProcessingEvent(_Event):
    status: Literal['processing']
    error: Any = None


class SucceededEvent(_Event):
    status: Literal['succeeded']
    output: Any = None


class FailedEvent(_Event):
    status: Literal['failed']
    error: Any = None


class CanceledEvent(_Event):
    status: Literal['canceled']
    error: Any = None


class UnknownEvent(_Event):
    status: str | None = None


WebhookEvent = Union[StartingEvent, ProcessingEvent, SucceededEvent, FailedEvent, CanceledEvent, UnknownEvent]

_VARIANTS: Dict[str, type[_Event]] = {
    'starting': StartingEvent,
    'processing': ProcessingEvent,
    'succeeded': SucceededEvent,
    'failed': FailedEvent,
    'canceled': CanceledEvent,
}


def parse_webhook_event(payload: Any) -> WebhookEvent:
    """
    Maps a decoded webhook body onto a WebhookEvent variant.

    Raises WebhookMappingError when the body is not an object or has no id.
    """
    if not isinstance(payload, dict):
        raise WebhookMappingError('Webhook body must be a JSON object')

    external_id = payload.get('id')
    if not isinstance(external_id, str) or not external_id.strip():
        raise WebhookMappingError('Webhook payload is missing the prediction id')

    status = payload.get('status')
    variant = _VARIANTS.get(status) if isinstance(status, str) else None

    core = {
        'id': external_id,
        'logs': _logs_text(payload.get('logs')),
        'raw': payload,
    }

    if variant is None:
        return UnknownEvent.model_validate({**core, 'status': status if isinstance(status, str) else None})

    try:
        return variant.model_validate({**payload, **core})
    except PydanticValidationError:
        # unusable optional fields (e.g. malformed timestamps) must not lose the status
        return variant.model_validate({
            **core,
            'status': status,
            'output': payload.get('output'),
            'error': payload.get('error'),
        })


def decode_webhook_body(body: bytes) -> WebhookEvent:
    try:
        payload = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        raise WebhookMappingError('Invalid request body')
    return parse_webhook_event(payload)


def _logs_text(logs: Any) -> str | None:
    if logs is None or isinstance(logs, str):
        return logs
    return json.dumps(logs)


def error_text(error: Any) -> str | None:
    if error is None or error == '':
        return None
    if isinstance(error, str):
        return error
    return json.dumps(error)


def output_reference(output: Any) -> str | None:
    """
    Reduces provider output to a single artifact reference.

    Generation models return a URL or a list of URLs (first one wins);
    trainers return a finetune id, either bare or as {"finetune_id": ...}.
    """
    if isinstance(output, str):
        return output or None
    if isinstance(output, list):
        for item in output:
            if isinstance(item, str) and item:
                return item
        return None
    if isinstance(output, dict):
        for key in ('finetune_id', 'weights', 'url', 'image'):
            value = output.get(key)
            if isinstance(value, str) and value:
                return value
    return None
