import base64
import json

import pytest

from essence.core.errors import SignatureError, WebhookMappingError
from essence.schemas.webhook import (
    CanceledEvent,
    ProcessingEvent,
    SucceededEvent,
    UnknownEvent,
    decode_webhook_body,
    output_reference,
    parse_webhook_event,
)
from essence.services.webhook_ingestor import sign_webhook, verify_webhook_signature


SECRET = 'whsec_' + base64.b64encode(b'super-secret-signing-key').decode()


def test_parses_known_statuses_into_variants():
    event = parse_webhook_event({
        'id': 'abc123',
        'status': 'succeeded',
        'output': ['https://provider/result.jpg'],
        'metrics': {'predict_time': 12.5},
        'logs': 'done',
    })
    assert isinstance(event, SucceededEvent)
    assert event.predict_time == 12.5
    assert event.raw['id'] == 'abc123'

    assert isinstance(parse_webhook_event({'id': 'x', 'status': 'processing'}), ProcessingEvent)
    assert isinstance(parse_webhook_event({'id': 'x', 'status': 'canceled'}), CanceledEvent)


def test_unknown_status_is_kept_as_unknown_event():
    event = parse_webhook_event({'id': 'abc123', 'status': 'queued'})
    assert isinstance(event, UnknownEvent)
    assert event.status == 'queued'


def test_malformed_optional_fields_do_not_lose_the_status():
    event = parse_webhook_event({'id': 'abc123', 'status': 'processing', 'started_at': 'not a date'})
    assert isinstance(event, ProcessingEvent)
    assert event.started_at is None


@pytest.mark.parametrize('body', [b'not json', b'[]', b'{"status": "succeeded"}', b'{"id": ""}'])
def test_rejects_bodies_without_a_prediction_id(body):
    with pytest.raises(WebhookMappingError):
        decode_webhook_body(body)


def test_output_reference_shapes():
    assert output_reference('https://a/b.jpg') == 'https://a/b.jpg'
    assert output_reference(['https://a/1.png', 'https://a/2.png']) == 'https://a/1.png'
    assert output_reference({'finetune_id': 'ft-1'}) == 'ft-1'
    assert output_reference([]) is None
    assert output_reference(None) is None


def _signed_headers(body: bytes, timestamp: int = 1_700_000_000):
    return {
        'webhook-id': 'msg_1',
        'webhook-timestamp': str(timestamp),
        'webhook-signature': 'v1,' + sign_webhook(SECRET, 'msg_1', str(timestamp), body),
    }


def test_signature_accepts_valid_payload():
    body = json.dumps({'id': 'abc123', 'status': 'processing'}).encode()
    verify_webhook_signature(secret=SECRET, headers=_signed_headers(body), body=body, now=1_700_000_010)


def test_signature_accepts_any_listed_signature():
    body = b'{"id": "abc123"}'
    headers = _signed_headers(body)
    headers['webhook-signature'] = 'v1,bm90LXRoaXMtb25l ' + headers['webhook-signature']
    verify_webhook_signature(secret=SECRET, headers=headers, body=body, now=1_700_000_000)


def test_signature_rejects_tampered_body():
    body = b'{"id": "abc123", "status": "processing"}'
    headers = _signed_headers(body)
    with pytest.raises(SignatureError):
        verify_webhook_signature(
            secret=SECRET,
            headers=headers,
            body=b'{"id": "abc123", "status": "succeeded"}',
            now=1_700_000_000,
        )


def test_signature_rejects_stale_timestamp_and_missing_headers():
    body = b'{"id": "abc123"}'
    with pytest.raises(SignatureError):
        verify_webhook_signature(secret=SECRET, headers=_signed_headers(body), body=body, now=1_700_001_000)
    with pytest.raises(SignatureError):
        verify_webhook_signature(secret=SECRET, headers={}, body=body, now=1_700_000_000)
