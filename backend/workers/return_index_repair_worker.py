import asyncio
import logging

from config.env import RETURN_INDEX_REPAIR_INTERVAL_SECONDS
from database import get_store
from utils.return_tracking import rebuild_return_index

logger = logging.getLogger(__name__)


async def return_index_repair_worker():
    store = get_store()

    while True:
        try:
            count = await rebuild_return_index(store)
            logger.info("RETURN_INDEX_REBUILT entries=%s", count)
        except Exception:
            logger.exception("RETURN_INDEX_REBUILD_ERROR")

        await asyncio.sleep(RETURN_INDEX_REPAIR_INTERVAL_SECONDS)
