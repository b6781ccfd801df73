import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from essence.core.config import Settings
from essence.services.derivatives import DerivativePipeline
from essence.services.finalizer import ArtifactFinalizer
from essence.services.ip_registrar import IPRegistrar
from essence.services.job_events import JobEventHub
from essence.services.outbox import Outbox, SUBMIT_JOB, FINALIZE_JOB
from essence.services.replicate_client import ReplicateClient
from essence.services.storage import build_storage
from essence.services.submitter import Submitter


@dataclass
class Services:
    settings: Settings
    sessionmaker: async_sessionmaker[AsyncSession]
    provider: ReplicateClient
    storage: object
    registrar: IPRegistrar
    outbox: Outbox
    events: JobEventHub
    submitter: Submitter
    pipeline: DerivativePipeline
    finalizer: ArtifactFinalizer


def build_services(
        settings: Settings,
        sessionmaker: async_sessionmaker[AsyncSession],
        *,
        provider=None,
        storage=None,
        registrar=None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
) -> Services:
    """
    Wires the collaborators together and registers the outbox handlers.
    Tests pass fakes for provider, storage and registrar.
    """
    provider = provider or ReplicateClient(
        api_token=settings.REPLICATE_API_TOKEN,
        base_url=settings.REPLICATE_API_BASE,
    )
    storage = storage or build_storage(settings)
    registrar = registrar or IPRegistrar(
        base_url=settings.IP_REGISTRAR_URL,
        token=settings.IP_REGISTRAR_TOKEN,
        spg_nft_contract=settings.SPG_NFT_CONTRACT,
    )

    outbox = Outbox(
        sessionmaker,
        batch_size=settings.OUTBOX_BATCH_SIZE,
        max_attempts=settings.OUTBOX_MAX_ATTEMPTS,
        retry_seconds=settings.OUTBOX_RETRY_SECONDS,
    )
    events = JobEventHub()

    submitter = Submitter(settings=settings, provider=provider, storage=storage, outbox=outbox, events=events)
    pipeline = DerivativePipeline(settings=settings, registrar=registrar, events=events, sleep=sleep)
    finalizer = ArtifactFinalizer(
        settings=settings,
        provider=provider,
        storage=storage,
        pipeline=pipeline,
        events=events,
        sleep=sleep,
    )

    async def submit_job(db: AsyncSession, job_id: str, last_attempt: bool = False):
        await submitter.submit(db, job_id)

    outbox.register(SUBMIT_JOB, submit_job)
    outbox.register(FINALIZE_JOB, finalizer.finalize)

    return Services(
        settings=settings,
        sessionmaker=sessionmaker,
        provider=provider,
        storage=storage,
        registrar=registrar,
        outbox=outbox,
        events=events,
        submitter=submitter,
        pipeline=pipeline,
        finalizer=finalizer,
    )
