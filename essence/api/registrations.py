from dataclasses import asdict

from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from essence.api.deps import get_db, get_services
from essence.core.errors import RegistrationError
from essence.schemas.job import AssetRegistrationUpdate, TrainingAssetOut
from essence.services import job_service
from essence.services.container import Services


router = APIRouter(tags=['registrations'])


@router.post('/jobs/{job_id}/register-derivative')
async def register_derivative(
    job_id: str,
    force: bool = False,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    job = await job_service.get_job(db=db, job_id=job_id)
    result = await services.pipeline.register_derivative(db, job, force=force)
    if not result.success:
        # already recorded on the job, the sweep picks it up again
        raise RegistrationError(f'Derivative registration failed after {result.attempts} attempt(s): {result.error}')
    return {'job_id': job.id, **asdict(result)}


@router.post('/registrations/retry-failed')
async def retry_failed_registrations(
    limit: int | None = Query(default=None, ge=1, le=100),
    force: bool = False,
    job_id: str | None = None,
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    report = await services.pipeline.retry_failed_registrations(db, limit=limit, force=force, job_id=job_id)
    return asdict(report)


@router.get('/registrations/stats')
async def registration_stats(
    db: AsyncSession = Depends(get_db),
    services: Services = Depends(get_services)
):
    return await services.pipeline.registration_stats(db)


@router.patch('/training-assets/{asset_id}/registration', response_model=TrainingAssetOut)
async def update_asset_registration(
    asset_id: str,
    payload: AssetRegistrationUpdate,
    db: AsyncSession = Depends(get_db)
):
    asset = await job_service.record_asset_registration(db=db, asset_id=asset_id, update_data=payload)
    return TrainingAssetOut.from_asset(asset)
