"""Store gateway interface."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple

CONVERSATIONS = "conversations"
MESSAGES = "messages"

ASCENDING = 1
DESCENDING = -1

Query = Dict[str, Any]
Sort = Sequence[Tuple[str, int]]


@dataclass(frozen=True)
class ChangeEvent:
    """Something changed in ``table``. No row payload is promised."""

    operation: str  # "insert" | "update" | "delete"
    table: str


class ChangeStream(ABC):
    """Async iterator of :class:`ChangeEvent`.

    Iteration raises ``StoreUnavailable`` when the underlying channel drops;
    the stream is unusable afterwards and has to be re-opened.
    """

    def __aiter__(self) -> "ChangeStream":
        return self

    @abstractmethod
    async def __anext__(self) -> ChangeEvent:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass

    async def __aenter__(self) -> "ChangeStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


class StoreGateway(ABC):
    """Abstract persistent store used by the repositories.

    Queries use a small MongoDB-style dialect: field equality (array fields
    match when they contain the value), ``$in``, ``$ne``, ``$gt``, ``$gte``,
    ``$lt``, ``$lte`` and a top-level ``$or``. Updates accept ``$set``,
    ``$inc`` and ``$max`` with dotted paths.
    """

    @abstractmethod
    async def ensure_indexes(self) -> None:
        """Declare the unique dedup index and the sort indexes."""
        pass

    @abstractmethod
    async def find(
        self,
        table: str,
        query: Query,
        sort: Optional[Sort] = None,
        limit: Optional[int] = None,
    ) -> List[Dict[str, Any]]:
        pass

    @abstractmethod
    async def find_one(self, table: str, query: Query) -> Optional[Dict[str, Any]]:
        pass

    @abstractmethod
    async def count(self, table: str, query: Query) -> int:
        pass

    @abstractmethod
    async def insert_one(self, table: str, document: Dict[str, Any]) -> Dict[str, Any]:
        """Insert and return the document with its ``_id`` set.

        Raises ``pymongo.errors.DuplicateKeyError`` on a unique index violation.
        """
        pass

    @abstractmethod
    async def update_one(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def update_many(self, table: str, query: Query, update: Dict[str, Any]) -> int:
        pass

    @abstractmethod
    async def delete_one(self, table: str, query: Query) -> int:
        pass

    @abstractmethod
    async def delete_many(self, table: str, query: Query) -> int:
        pass

    @abstractmethod
    async def subscribe(self, table: str, query: Query) -> ChangeStream:
        """Open a change stream for rows of ``table`` matching ``query``.

        Delivery is at-least-once and unordered relative to other tables.
        """
        pass

    async def close(self) -> None:
        return
