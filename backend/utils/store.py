import asyncio

from bson import ObjectId

from config.env import MAX_BATCH_OPERATIONS, QUERY_IN_CHUNK_SIZE
from utils.errors import NotFoundError


def new_id() -> str:
    return str(ObjectId())


def chunked(values: list, size: int):
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _to_doc(raw: dict | None) -> dict | None:
    # Mongo "_id" surfaces as "id"
    if raw is None:
        return None
    doc = dict(raw)
    doc["id"] = doc.pop("_id")
    return doc


def _strip_id(data: dict) -> dict:
    return {k: v for k, v in data.items() if k not in ("id", "_id")}


class DocumentStore:
    """
    Document store over a motor database.

    Every method takes an optional session so it can run inside
    run_transaction(). Documents come back as plain dicts with "id".
    """

    def __init__(
        self,
        db,
        *,
        batch_limit: int = MAX_BATCH_OPERATIONS,
        in_chunk_size: int = QUERY_IN_CHUNK_SIZE,
    ):
        self.db = db
        self.batch_limit = batch_limit
        self.in_chunk_size = in_chunk_size

    # ==============================
    # Reads
    # ==============================

    async def get(self, collection: str, doc_id: str, *, session=None) -> dict | None:
        raw = await self.db[collection].find_one({"_id": doc_id}, session=session)
        return _to_doc(raw)

    async def find(
        self,
        collection: str,
        filter: dict | None = None,
        *,
        sort: list | None = None,
        limit: int | None = None,
        skip: int | None = None,
        session=None,
    ) -> list[dict]:
        cursor = self.db[collection].find(filter or {}, session=session)
        if sort:
            cursor = cursor.sort(sort)
        if skip:
            cursor = cursor.skip(skip)
        if limit:
            cursor = cursor.limit(limit)
        return [_to_doc(raw) async for raw in cursor]

    async def find_in(
        self,
        collection: str,
        field: str,
        values: list,
        *,
        session=None,
    ) -> list[dict]:
        """
        Query by field in values, chunked so no single "$in" exceeds
        in_chunk_size. Chunks run concurrently outside a session;
        a session only allows one operation at a time.
        """
        values = list(dict.fromkeys(values))
        if not values:
            return []

        chunks = list(chunked(values, self.in_chunk_size))
        if session is not None:
            results = []
            for chunk in chunks:
                results.append(await self.find(collection, {field: {"$in": chunk}}, session=session))
        else:
            results = await asyncio.gather(*[
                self.find(collection, {field: {"$in": chunk}}) for chunk in chunks
            ])

        return [doc for docs in results for doc in docs]

    # ==============================
    # Writes
    # ==============================

    async def add(self, collection: str, data: dict, *, doc_id: str | None = None, session=None) -> str:
        doc_id = doc_id or new_id()
        await self.db[collection].insert_one({"_id": doc_id, **_strip_id(data)}, session=session)
        return doc_id

    async def set(self, collection: str, doc_id: str, data: dict, *, merge: bool = True, session=None):
        if merge:
            await self.db[collection].update_one(
                {"_id": doc_id},
                {"$set": _strip_id(data)},
                upsert=True,
                session=session,
            )
        else:
            await self.db[collection].replace_one(
                {"_id": doc_id},
                _strip_id(data),
                upsert=True,
                session=session,
            )

    async def update(self, collection: str, doc_id: str, changes: dict, *, session=None):
        result = await self.db[collection].update_one(
            {"_id": doc_id},
            {"$set": _strip_id(changes)},
            session=session,
        )
        if result.matched_count == 0:
            raise NotFoundError(f"{collection} {doc_id} not found", {"id": doc_id})

    async def delete(self, collection: str, doc_id: str, *, session=None) -> bool:
        result = await self.db[collection].delete_one({"_id": doc_id}, session=session)
        return result.deleted_count > 0

    async def delete_where(self, collection: str, filter: dict, *, session=None) -> int:
        result = await self.db[collection].delete_many(filter, session=session)
        return result.deleted_count

    # ==============================
    # Atomicity
    # ==============================

    async def run_transaction(self, callback):
        """
        Run callback(session) in a multi-document transaction.
        The driver retries the callback on transient write conflicts,
        so it must be safe to re-run.
        """
        async with await self.db.client.start_session() as session:
            return await session.with_transaction(callback)

    def batch(self) -> "WriteBatch":
        return WriteBatch(self)


class WriteBatch:
    """
    Collects writes and commits them atomically. Batches larger than
    store.batch_limit commit as several sequential transactions.
    """

    def __init__(self, store: DocumentStore):
        self.store = store
        self.ops = []

    def __len__(self):
        return len(self.ops)

    def add(self, collection: str, data: dict) -> str:
        doc_id = new_id()
        self.ops.append(("add", collection, doc_id, data))
        return doc_id

    def set(self, collection: str, doc_id: str, data: dict, merge: bool = True):
        self.ops.append(("set" if merge else "replace", collection, doc_id, data))

    def update(self, collection: str, doc_id: str, changes: dict):
        self.ops.append(("update", collection, doc_id, changes))

    def delete(self, collection: str, doc_id: str, must_exist: bool = False):
        self.ops.append(("delete_existing" if must_exist else "delete", collection, doc_id, None))

    async def _apply(self, op, session):
        kind, collection, doc_id, data = op
        if kind == "add":
            await self.store.add(collection, data, doc_id=doc_id, session=session)
        elif kind == "set":
            await self.store.set(collection, doc_id, data, merge=True, session=session)
        elif kind == "replace":
            await self.store.set(collection, doc_id, data, merge=False, session=session)
        elif kind == "update":
            await self.store.update(collection, doc_id, data, session=session)
        elif kind == "delete":
            await self.store.delete(collection, doc_id, session=session)
        elif kind == "delete_existing":
            if not await self.store.delete(collection, doc_id, session=session):
                # aborts the chunk
                raise NotFoundError(f"{collection} {doc_id} not found", {"id": doc_id})

    async def commit(self) -> int:
        ops, self.ops = self.ops, []
        commits = 0

        for chunk in chunked(ops, self.store.batch_limit):
            async def write_chunk(session, chunk=chunk):
                for op in chunk:
                    await self._apply(op, session)

            await self.store.run_transaction(write_chunk)
            commits += 1

        return commits

