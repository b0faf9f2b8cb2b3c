from typing import Optional

import structlog

from estate_messaging import config
from estate_messaging.database.base import StoreGateway
from estate_messaging.database.memory import InMemoryStoreGateway
from estate_messaging.database.mongo import MongoStoreGateway

logger = structlog.get_logger()

_gateway: Optional[StoreGateway] = None


async def connect_to_store(gateway: Optional[StoreGateway] = None) -> StoreGateway:
    global _gateway
    if gateway is None:
        if config.STORE_BACKEND == "memory":
            gateway = InMemoryStoreGateway()
        else:
            gateway = MongoStoreGateway.from_url(config.MONGO_URL, config.MONGO_DB_NAME)
    # indexes are part of the deployed schema; this only declares them
    await gateway.ensure_indexes()
    _gateway = gateway
    logger.info("store_connected", backend=type(gateway).__name__)
    return gateway


async def close_store_connection() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.close()
        _gateway = None
        logger.info("store_closed")


def get_gateway() -> StoreGateway:
    if _gateway is None:
        raise RuntimeError("Store is not connected")
    return _gateway


async def store_dependency() -> StoreGateway:
    return get_gateway()
