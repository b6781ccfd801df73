from typing import List

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect
from loguru import logger
from sqlalchemy.ext.asyncio import AsyncSession

from essence.api.deps import get_db, get_services, get_settings
from essence.core.config import Settings
from essence.core.errors import NotFoundError
from essence.schemas.job import (
    TrainingJobCreateRequest,
    GenerationJobCreateRequest,
    JobCreatedResponse,
    JobResponse,
    TrainingAssetOut,
)
from essence.services import job_service
from essence.services.container import Services
from essence.services.job_events import is_settled, job_snapshot
from essence.services.job_state import JobKind
from essence.services.status_projection import get_job_view, project_job


router = APIRouter(prefix='/jobs', tags=['jobs'])


@router.post('/training', response_model=JobCreatedResponse, status_code=201)
async def create_training_job(
    payload: TrainingJobCreateRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.create_job(
        db=db,
        kind=JobKind.TRAINING,
        input_parameters=payload.parameters,
        parent_references=payload.parent_references,
        assets=payload.assets,
        outbox=services.outbox,
    )
    return JobCreatedResponse(id=job.id, status=job.status)


@router.post('/generation', response_model=JobCreatedResponse, status_code=201)
async def create_generation_job(
    payload: GenerationJobCreateRequest,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.create_job(
        db=db,
        kind=JobKind.GENERATION,
        input_parameters=payload.parameters,
        parent_references=payload.parent_references,
        outbox=services.outbox,
    )
    return JobCreatedResponse(id=job.id, status=job.status)


@router.get('/', response_model=List[JobResponse])
async def list_jobs(
    kind: JobKind | None = None,
    include_hidden: bool = False,
    limit: int = Query(default=50, ge=1, le=200),
    offset: int = Query(default=0, ge=0),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings)
):
    jobs = await job_service.list_jobs(
        db=db,
        kind=kind,
        include_hidden=include_hidden,
        limit=limit,
        offset=offset,
    )
    return [project_job(job, settings.STALE_JOB_MINUTES) for job in jobs]


@router.get('/{job_id}', response_model=JobResponse)
async def get_job(
    job_id: str,
    refresh: bool = False,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    return await get_job_view(
        db=db,
        job_id=job_id,
        stale_minutes=services.settings.STALE_JOB_MINUTES,
        provider=services.provider,
        refresh=refresh,
        outbox=services.outbox,
        events=services.events,
    )


@router.post('/{job_id}/hide', response_model=JobResponse)
async def hide_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.hide_job(db=db, job_id=job_id, events=services.events)
    return project_job(job, services.settings.STALE_JOB_MINUTES)


# deleting a job only hides it
@router.delete('/{job_id}', response_model=JobResponse)
async def delete_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.hide_job(db=db, job_id=job_id, events=services.events)
    return project_job(job, services.settings.STALE_JOB_MINUTES)


@router.post('/{job_id}/unhide', response_model=JobResponse)
async def unhide_job(
    job_id: str,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.unhide_job(db=db, job_id=job_id, events=services.events)
    return project_job(job, services.settings.STALE_JOB_MINUTES)


@router.get('/{job_id}/assets', response_model=List[TrainingAssetOut])
async def list_job_assets(job_id: str, db: AsyncSession = Depends(get_db)):
    assets = await job_service.list_training_assets(db=db, job_id=job_id)
    return [TrainingAssetOut.from_asset(asset) for asset in assets]


@router.websocket('/{job_id}/events')
async def job_events(
    websocket: WebSocket,
    job_id: str,
    services: Services = Depends(get_services)
):
    # subscribe before reading the snapshot so no change falls in between
    queue = await services.events.subscribe(job_id)

    try:
        async with services.sessionmaker() as db:
            try:
                job = await job_service.get_job(db=db, job_id=job_id)
            except NotFoundError:
                await websocket.close(code=4404)
                return
            snapshot = job_snapshot(job)

        await websocket.accept()
        await websocket.send_json(snapshot)

        while not is_settled(snapshot):
            snapshot = await queue.get()
            await websocket.send_json(snapshot)

        await websocket.close()
    except WebSocketDisconnect:
        logger.debug(f'[events] client left job={job_id}')
    finally:
        await services.events.unsubscribe(job_id, queue)
