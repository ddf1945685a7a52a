import asyncio
import copy
import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Optional, Protocol
from uuid import uuid4

logger = logging.getLogger(__name__)


USERS = "users"
TRANSACTIONS = "transactions"
SURVEYS = "surveys"
SURVEY_COMPLETIONS = "surveyCompletions"
PACKAGES = "packages"
USER_PACKAGES = "userPackages"
BONUSES = "bonuses"
USER_BONUSES = "userBonuses"
WITHDRAWALS = "withdrawals"
PAYMENT_INTENTS = "paymentIntents"


class StoreError(Exception):
    pass


class StoreUnavailableError(StoreError):
    pass


class DocumentNotFoundError(StoreError):
    pass


class DocumentExistsError(StoreError):
    pass


class Increment:
    def __init__(self, value):
        self.value = value

    def __repr__(self) -> str:
        return f"Increment({self.value!r})"


class ArrayUnion:
    def __init__(self, *items):
        self.items = list(items)


class ArrayRemove:
    def __init__(self, *items):
        self.items = list(items)


def _apply_fields(document: dict, fields: dict) -> dict:
    for key, value in fields.items():
        if isinstance(value, Increment):
            document[key] = (document.get(key) or 0) + value.value
        elif isinstance(value, ArrayUnion):
            current = list(document.get(key) or [])
            current.extend(item for item in value.items if item not in current)
            document[key] = current
        elif isinstance(value, ArrayRemove):
            document[key] = [item for item in (document.get(key) or []) if item not in value.items]
        else:
            document[key] = value
    return document


class Transaction(Protocol):
    async def get(self, collection: str, doc_id: str) -> Optional[dict]: ...
    async def set(self, collection: str, doc_id: str, document: dict) -> None: ...
    async def create(self, collection: str, doc_id: str, document: dict) -> None: ...
    async def update(self, collection: str, doc_id: str, fields: dict) -> None: ...
    async def add(self, collection: str, document: dict) -> str: ...


class DocumentStore(Protocol):
    async def get(self, collection: str, doc_id: str) -> Optional[dict]: ...
    async def set(self, collection: str, doc_id: str, document: dict) -> None: ...
    async def update(self, collection: str, doc_id: str, fields: dict) -> None: ...
    async def add(self, collection: str, document: dict) -> str: ...

    async def query(
        self,
        collection: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]: ...

    def transaction(self) -> Any: ...


class InMemoryTransaction:
    """Buffers writes over a snapshot view; the owning store applies them on commit."""

    def __init__(self, data: dict[str, dict[str, dict]]):
        self._data = data
        self._pending: dict[tuple[str, str], Optional[dict]] = {}
        self._created: set[tuple[str, str]] = set()

    def _current(self, collection: str, doc_id: str) -> Optional[dict]:
        key = (collection, doc_id)
        if key in self._pending:
            return self._pending[key]
        return self._data.get(collection, {}).get(doc_id)

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        document = self._current(collection, doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, document: dict) -> None:
        self._pending[(collection, doc_id)] = copy.deepcopy(document)

    async def create(self, collection: str, doc_id: str, document: dict) -> None:
        if self._current(collection, doc_id) is not None:
            raise DocumentExistsError(f"{collection}/{doc_id} already exists")
        await self.set(collection, doc_id, document)
        self._created.add((collection, doc_id))

    async def update(self, collection: str, doc_id: str, fields: dict) -> None:
        document = self._current(collection, doc_id)
        if document is None:
            raise DocumentNotFoundError(f"{collection}/{doc_id} not found")
        self._pending[(collection, doc_id)] = _apply_fields(copy.deepcopy(document), fields)

    async def add(self, collection: str, document: dict) -> str:
        doc_id = str(uuid4())
        await self.create(collection, doc_id, document)
        return doc_id

    def commit(self) -> None:
        for (collection, doc_id), document in self._pending.items():
            self._data.setdefault(collection, {})[doc_id] = document


class InMemoryDocumentStore:
    def __init__(self):
        self._data: dict[str, dict[str, dict]] = {}
        self._lock = asyncio.Lock()

    async def get(self, collection: str, doc_id: str) -> Optional[dict]:
        document = self._data.get(collection, {}).get(doc_id)
        return copy.deepcopy(document) if document is not None else None

    async def set(self, collection: str, doc_id: str, document: dict) -> None:
        async with self.transaction() as txn:
            await txn.set(collection, doc_id, document)

    async def update(self, collection: str, doc_id: str, fields: dict) -> None:
        async with self.transaction() as txn:
            await txn.update(collection, doc_id, fields)

    async def add(self, collection: str, document: dict) -> str:
        async with self.transaction() as txn:
            return await txn.add(collection, document)

    async def query(
        self,
        collection: str,
        filters: Optional[dict] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
    ) -> list[dict]:
        filters = filters or {}
        results = [
            {"id": doc_id, **copy.deepcopy(document)}
            for doc_id, document in self._data.get(collection, {}).items()
            if all(document.get(field) == value for field, value in filters.items())
        ]
        if order_by:
            results.sort(key=lambda d: (d.get(order_by) is None, d.get(order_by)), reverse=descending)
        if limit is not None:
            results = results[:limit]
        return results

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[InMemoryTransaction]:
        async with self._lock:
            txn = InMemoryTransaction(self._data)
            yield txn
            txn.commit()
