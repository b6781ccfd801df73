from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from essence.api.deps import get_db, get_services
from essence.services import job_service
from essence.services.container import Services
from essence.services.job_state import JobKind
from essence.services.webhook_ingestor import ingest_webhook


router = APIRouter(prefix='/api', tags=['webhooks'])


async def _receive(kind: JobKind, request: Request, db: AsyncSession, services: Services):
    body = await request.body()
    outcome = await ingest_webhook(
        db=db,
        kind=kind.value,
        body=body,
        headers=request.headers,
        settings=services.settings,
        outbox=services.outbox,
        events=services.events,
    )
    return {
        'received': True,
        'action': outcome.action,
        'job_id': outcome.job_id,
        'status': outcome.status,
    }


@router.post('/training-webhook')
async def training_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    return await _receive(JobKind.TRAINING, request, db, services)


@router.post('/generation-webhook')
async def generation_webhook(
    request: Request,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    return await _receive(JobKind.GENERATION, request, db, services)


@router.get('/webhooks/unmatched')
async def list_unmatched_webhooks(
    include_resolved: bool = False,
    limit: int = Query(default=100, ge=1, le=500),
    db: AsyncSession = Depends(get_db)
):
    parked = await job_service.list_unmatched_webhooks(db=db, include_resolved=include_resolved, limit=limit)
    return [
        {
            'id': item.id,
            'external_job_id': item.external_job_id,
            'status': item.status,
            'received_at': item.received_at,
            'resolved_at': item.resolved_at,
        }
        for item in parked
    ]


@router.post('/webhooks/unmatched/replay')
async def replay_unmatched_webhooks(
    external_job_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    replayed = await job_service.replay_unmatched_webhooks(
        db=db,
        external_job_id=external_job_id,
        outbox=services.outbox,
        events=services.events,
    )
    return {'replayed': replayed}
