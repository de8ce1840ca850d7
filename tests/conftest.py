import copy
from typing import Any

import pytest
from bson import ObjectId
from pymongo.errors import DuplicateKeyError

_MISSING = object()


def _get_path(doc: dict[str, Any], path: str) -> Any:
    current: Any = doc
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _set_path(doc: dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    current = doc
    for part in parts[:-1]:
        current = current.setdefault(part, {})
    current[parts[-1]] = value


def _unset_path(doc: dict[str, Any], path: str) -> None:
    parent = _get_path(doc, path.rsplit(".", 1)[0]) if "." in path else doc
    if isinstance(parent, dict):
        parent.pop(path.rsplit(".", 1)[-1], None)


def _matches_condition(value: Any, condition: Any) -> bool:
    if isinstance(condition, dict) and condition and all(key.startswith("$") for key in condition):
        present = value is not _MISSING
        actual = value if present else None
        for operator, expected in condition.items():
            if operator == "$ne":
                if actual == expected:
                    return False
            elif operator == "$in":
                if actual not in expected:
                    return False
            elif operator == "$exists":
                if present != bool(expected):
                    return False
            elif operator == "$gt":
                if not present or actual is None or not actual > expected:
                    return False
            elif operator == "$gte":
                if not present or actual is None or not actual >= expected:
                    return False
            elif operator == "$lt":
                if not present or actual is None or not actual < expected:
                    return False
            elif operator == "$lte":
                if not present or actual is None or not actual <= expected:
                    return False
            else:
                raise NotImplementedError(operator)
        return True
    if value is _MISSING:
        return condition is None
    return value == condition


def _matches(doc: dict[str, Any], query: dict[str, Any]) -> bool:
    return all(_matches_condition(_get_path(doc, key), condition) for key, condition in query.items())


def _sort_docs(docs: list[dict[str, Any]], sort: list[tuple[str, int]] | None) -> list[dict[str, Any]]:
    ordered = list(docs)
    for key, direction in reversed(sort or []):

        def sort_key(doc: dict[str, Any], key: str = key) -> tuple:
            value = _get_path(doc, key)
            if value is _MISSING or value is None:
                return (0, "")
            return (1, value)

        ordered.sort(key=sort_key, reverse=direction < 0)
    return ordered


class FakeInsertOneResult:
    def __init__(self, inserted_id: Any) -> None:
        self.inserted_id = inserted_id


class FakeUpdateResult:
    def __init__(self, matched_count: int, modified_count: int, upserted_id: Any = None) -> None:
        self.matched_count = matched_count
        self.modified_count = modified_count
        self.upserted_id = upserted_id


class FakeCursor:
    def __init__(self, docs: list[dict[str, Any]]) -> None:
        self._docs = docs
        self._sort: list[tuple[str, int]] | None = None
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list: Any, direction: int | None = None) -> "FakeCursor":
        if isinstance(key_or_list, str):
            self._sort = [(key_or_list, direction or 1)]
        else:
            self._sort = list(key_or_list)
        return self

    def skip(self, count: int) -> "FakeCursor":
        self._skip = count
        return self

    def limit(self, count: int) -> "FakeCursor":
        self._limit = count
        return self

    async def to_list(self, length: int | None = None) -> list[dict[str, Any]]:
        docs = _sort_docs(self._docs, self._sort)[self._skip :]
        if self._limit:
            docs = docs[: self._limit]
        if length is not None:
            docs = docs[:length]
        return [copy.deepcopy(doc) for doc in docs]


class FakeCollection:
    def __init__(self, name: str) -> None:
        self.name = name
        self.docs: list[dict[str, Any]] = []
        self.unique_keys: list[str] = []

    async def create_index(self, keys: list[tuple[str, int]], unique: bool = False, **_: Any) -> str:
        if unique and len(keys) == 1:
            self.unique_keys.append(keys[0][0])
        return "_".join(f"{key}_{direction}" for key, direction in keys)

    async def insert_one(self, doc: dict[str, Any], session: Any = None) -> FakeInsertOneResult:
        stored = copy.deepcopy(doc)
        stored.setdefault("_id", ObjectId())
        self._check_unique(stored)
        self.docs.append(stored)
        doc["_id"] = stored["_id"]
        return FakeInsertOneResult(stored["_id"])

    async def find_one(self, query: dict[str, Any] | None = None, session: Any = None) -> dict[str, Any] | None:
        for doc in self.docs:
            if _matches(doc, query or {}):
                return copy.deepcopy(doc)
        return None

    def find(self, query: dict[str, Any] | None = None, session: Any = None) -> FakeCursor:
        return FakeCursor([doc for doc in self.docs if _matches(doc, query or {})])

    async def count_documents(self, query: dict[str, Any], session: Any = None) -> int:
        return sum(1 for doc in self.docs if _matches(doc, query))

    async def update_one(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        upsert: bool = False,
        session: Any = None,
    ) -> FakeUpdateResult:
        for doc in self.docs:
            if _matches(doc, query):
                self._apply_update(doc, update, inserting=False)
                return FakeUpdateResult(1, 1)
        if upsert:
            created = self._upsert(query, update)
            return FakeUpdateResult(0, 0, created["_id"])
        return FakeUpdateResult(0, 0)

    async def update_many(self, query: dict[str, Any], update: dict[str, Any], session: Any = None) -> FakeUpdateResult:
        matched = [doc for doc in self.docs if _matches(doc, query)]
        for doc in matched:
            self._apply_update(doc, update, inserting=False)
        return FakeUpdateResult(len(matched), len(matched))

    async def find_one_and_update(
        self,
        query: dict[str, Any],
        update: dict[str, Any],
        sort: list[tuple[str, int]] | None = None,
        upsert: bool = False,
        return_document: bool = False,
        session: Any = None,
    ) -> dict[str, Any] | None:
        candidates = _sort_docs([doc for doc in self.docs if _matches(doc, query)], sort)
        if candidates:
            doc = candidates[0]
            before = copy.deepcopy(doc)
            self._apply_update(doc, update, inserting=False)
            return copy.deepcopy(doc) if return_document else before
        if upsert:
            created = self._upsert(query, update)
            return copy.deepcopy(created) if return_document else None
        return None

    async def delete_many(self, query: dict[str, Any], session: Any = None) -> None:
        self.docs = [doc for doc in self.docs if not _matches(doc, query)]

    def _upsert(self, query: dict[str, Any], update: dict[str, Any]) -> dict[str, Any]:
        doc: dict[str, Any] = {"_id": ObjectId()}
        for key, condition in query.items():
            if not (isinstance(condition, dict) and any(op.startswith("$") for op in condition)):
                _set_path(doc, key, copy.deepcopy(condition))
        self._apply_update(doc, update, inserting=True)
        self._check_unique(doc)
        self.docs.append(doc)
        return doc

    def _apply_update(self, doc: dict[str, Any], update: dict[str, Any], *, inserting: bool) -> None:
        for key, value in update.get("$set", {}).items():
            _set_path(doc, key, copy.deepcopy(value))
        if inserting:
            for key, value in update.get("$setOnInsert", {}).items():
                _set_path(doc, key, copy.deepcopy(value))
        for key in update.get("$unset", {}):
            _unset_path(doc, key)
        for key, value in update.get("$inc", {}).items():
            current = _get_path(doc, key)
            _set_path(doc, key, (0 if current is _MISSING else current) + value)
        for key, value in update.get("$push", {}).items():
            current = _get_path(doc, key)
            items = [] if current is _MISSING else list(current)
            items.append(copy.deepcopy(value))
            _set_path(doc, key, items)

    def _check_unique(self, candidate: dict[str, Any]) -> None:
        for key in self.unique_keys:
            value = _get_path(candidate, key)
            if value is _MISSING:
                continue
            for doc in self.docs:
                if doc is not candidate and _get_path(doc, key) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {key}")


class FakeDatabase:
    def __init__(self, name: str) -> None:
        self.name = name
        self.collections: dict[str, FakeCollection] = {}

    def __getitem__(self, name: str) -> FakeCollection:
        if name not in self.collections:
            self.collections[name] = FakeCollection(name)
        return self.collections[name]


class FakeTransaction:
    def __init__(self, client: "FakeMongoClient") -> None:
        self._client = client
        self._snapshot: dict[tuple[str, str], list[dict[str, Any]]] = {}

    async def __aenter__(self) -> "FakeTransaction":
        self._snapshot = {
            (db_name, coll_name): copy.deepcopy(collection.docs)
            for db_name, database in self._client.databases.items()
            for coll_name, collection in database.collections.items()
        }
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        if exc_type is not None:
            self._client.aborted_transactions += 1
            for (db_name, coll_name), docs in self._snapshot.items():
                self._client.databases[db_name].collections[coll_name].docs = docs
        else:
            self._client.committed_transactions += 1
        return False


class FakeSession:
    def __init__(self, client: "FakeMongoClient") -> None:
        self._client = client

    def start_transaction(self) -> FakeTransaction:
        return FakeTransaction(self._client)

    async def __aenter__(self) -> "FakeSession":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> bool:
        return False


class FakeMongoClient:
    def __init__(self) -> None:
        self.databases: dict[str, FakeDatabase] = {}
        self.committed_transactions = 0
        self.aborted_transactions = 0

    def __getitem__(self, name: str) -> FakeDatabase:
        if name not in self.databases:
            self.databases[name] = FakeDatabase(name)
        return self.databases[name]

    async def start_session(self) -> FakeSession:
        return FakeSession(self)


@pytest.fixture
def mongo_client() -> FakeMongoClient:
    return FakeMongoClient()


@pytest.fixture
def database(mongo_client: FakeMongoClient) -> FakeDatabase:
    return mongo_client["business_rankings_test"]
