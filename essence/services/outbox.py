import asyncio
from datetime import timedelta
from loguru import logger
from typing import Awaitable, Callable, Dict
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from essence.core.errors import RegistrationDeferred
from essence.db.base import utcnow
from essence.models.outbox_task import OutboxTask


SUBMIT_JOB = 'submit_job'
FINALIZE_JOB = 'finalize_job'

# handler(db, job_id, last_attempt=...)
TaskHandler = Callable[..., Awaitable[None]]


class Outbox:
    """
    Durable task queue backed by the outbox_tasks table.

    Tasks are added to the caller's session so they commit atomically with
    the job change that caused them. Handlers run one at a time, each in a
    fresh session, and must be idempotent: a task may run again after a crash.
    """

    def __init__(
            self,
            sessionmaker: async_sessionmaker[AsyncSession],
            *,
            batch_size: int = 10,
            max_attempts: int = 5,
            retry_seconds: float = 15.0
    ):
        self._sessionmaker = sessionmaker
        self._handlers: Dict[str, TaskHandler] = {}
        self._wakeup = asyncio.Event()
        self.batch_size = batch_size
        self.max_attempts = max_attempts
        self.retry_seconds = retry_seconds

    def register(self, kind: str, handler: TaskHandler):
        self._handlers[kind] = handler

    def enqueue(
            self,
            db: AsyncSession,
            kind: str,
            job_id: str,
            *,
            delay_seconds: float = 0
    ) -> OutboxTask:
        """
        Adds a task to the session. Not committed here.
        """
        task = OutboxTask(
            kind=kind,
            job_id=job_id,
            status='pending',
            attempts=0,
            available_at=utcnow() + timedelta(seconds=delay_seconds),
        )
        db.add(task)
        return task

    def wake(self):
        self._wakeup.set()

    async def wait(self, timeout: float):
        try:
            await asyncio.wait_for(self._wakeup.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pass
        finally:
            self._wakeup.clear()

    async def recover(self) -> int:
        """
        Puts tasks left running by a dead process back in the queue.
        """
        async with self._sessionmaker() as db:
            result = await db.execute(
                update(OutboxTask)
                .where(OutboxTask.status == 'running')
                .values(status='pending', updated_at=utcnow())
            )
            await db.commit()
        if result.rowcount:
            logger.warning(f'[outbox] recovered {result.rowcount} interrupted task(s)')
        return result.rowcount or 0

    async def process_pending(self) -> int:
        """
        One dispatcher tick. Returns the number of tasks run.
        """
        async with self._sessionmaker() as db:
            result = await db.execute(
                select(OutboxTask)
                .where(
                    OutboxTask.status == 'pending',
                    OutboxTask.available_at <= utcnow()
                )
                .order_by(OutboxTask.id)
                .limit(self.batch_size)
                .with_for_update(skip_locked=True)
            )
            tasks = result.scalars().all()

            for task in tasks:
                task.status = 'running'
                task.attempts += 1

            claimed = [(task.id, task.kind, task.job_id, task.attempts) for task in tasks]
            await db.commit()

        for task_id, kind, job_id, attempts in claimed:
            await self._run(task_id, kind, job_id, attempts)

        return len(claimed)

    async def drain(self, max_rounds: int = 20) -> int:
        """
        Runs ticks until nothing is due. Used by tests and one-off scripts.
        """
        total = 0
        for _ in range(max_rounds):
            processed = await self.process_pending()
            if not processed:
                break
            total += processed
        return total

    async def _run(self, task_id: int, kind: str, job_id: str, attempts: int):
        handler = self._handlers.get(kind)
        if handler is None:
            await self._finish(task_id, error=f'No handler registered for "{kind}"', give_up=True)
            return

        try:
            async with self._sessionmaker() as db:
                await handler(db, job_id, last_attempt=attempts >= self.max_attempts)
        except RegistrationDeferred as e:
            logger.info(f'[outbox] task {task_id} ({kind}) for job={job_id} deferred: {e.message}')
            await self._finish(task_id, error=e.message)
            return
        except Exception as e:
            logger.exception(f'[outbox] task {task_id} ({kind}) for job={job_id} failed: {e}')
            await self._finish(task_id, error=str(e) or type(e).__name__)
            return

        await self._finish(task_id)

    async def _finish(self, task_id: int, error: str | None = None, give_up: bool = False):
        async with self._sessionmaker() as db:
            task = await db.get(OutboxTask, task_id)
            if not task:
                return

            if error is None:
                task.status = 'done'
                task.last_error = None
            elif give_up or task.attempts >= self.max_attempts:
                task.status = 'failed'
                task.last_error = error
                logger.error(f'[outbox] task {task_id} ({task.kind}) gave up after {task.attempts} attempt(s)')
            else:
                task.status = 'pending'
                task.last_error = error
                task.available_at = utcnow() + timedelta(seconds=self.retry_seconds * task.attempts)

            await db.commit()
