import asyncio
from loguru import logger

from essence.services.outbox import Outbox


async def outbox_loop(outbox: Outbox, poll_interval: float = 1.0):
    logger.info('Outbox loop started')

    await outbox.recover()

    while True:
        processed = 0
        try:
            processed = await outbox.process_pending()
        except asyncio.CancelledError:
            logger.info('Outbox loop cancelled')
            break
        except Exception as e:
            logger.exception(f'Outbox loop error: {e}')

        if not processed:
            try:
                await outbox.wait(poll_interval)
            except asyncio.CancelledError:
                logger.info('Outbox loop cancelled')
                break
