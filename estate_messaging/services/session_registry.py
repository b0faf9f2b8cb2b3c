from typing import Dict, Optional

import structlog

from estate_messaging.database.base import StoreGateway
from estate_messaging.errors import MessagingError
from estate_messaging.schemas.messaging import Identity
from estate_messaging.services.messaging_service import MessagingService
from estate_messaging.utils.blob_store import BlobStore

logger = structlog.get_logger()


class SessionRegistry:
    """One MessagingService per signed-in user, shared by that user's requests."""

    def __init__(self, gateway: StoreGateway, blob_store: BlobStore, retry_seconds: Optional[float] = None) -> None:
        self._gateway = gateway
        self._blob_store = blob_store
        self._retry_seconds = retry_seconds
        self._sessions: Dict[str, MessagingService] = {}
        self._live: Dict[str, int] = {}

    def get(self, identity: Identity) -> MessagingService:
        service = self._sessions.get(identity.id)
        if service is None:
            service = MessagingService(identity, self._gateway, self._blob_store, self._retry_seconds)
            self._sessions[identity.id] = service
            logger.info("session_created", user_id=identity.id)
        return service

    async def connect(self, identity: Identity) -> MessagingService:
        """Register a live connection; the first one starts change tracking."""
        service = self.get(identity)
        self._live[identity.id] = self._live.get(identity.id, 0) + 1
        if self._live[identity.id] == 1:
            try:
                await service.load()
            except MessagingError:
                await self.disconnect(identity.id)
                raise
            service.start_realtime()
        return service

    async def disconnect(self, user_id: str) -> None:
        remaining = self._live.get(user_id, 0) - 1
        if remaining > 0:
            self._live[user_id] = remaining
            return
        self._live.pop(user_id, None)
        service = self._sessions.get(user_id)
        if service is not None:
            await service.close()
            logger.info("session_idle", user_id=user_id)

    async def close(self) -> None:
        for service in self._sessions.values():
            await service.close()
        self._sessions.clear()
        self._live.clear()
