"""
Pytest configuration for the Expense Tracker test suite.

Provides an in-memory stand-in for the Motor collections the managers use, so manager
logic can be exercised without a MongoDB server, plus user fixtures and route helpers.
"""

from contextlib import asynccontextmanager
import copy
import os
import re
import sys
import time
from types import SimpleNamespace
from typing import Any, Dict, List, Optional, Tuple
from unittest.mock import AsyncMock

from bson import ObjectId
from pymongo.errors import DuplicateKeyError
import pytest

# Settings validate these at import time
os.environ.setdefault("SECRET_KEY", "test-secret-key-for-unit-tests")
os.environ.setdefault("MONGODB_URL", "mongodb://localhost:27017")
os.environ.setdefault("LOKI_ENABLED", "false")
os.environ.setdefault("FCM_ENABLED", "false")

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from expense_tracker.managers.push_manager import PushResult  # noqa: E402
from expense_tracker.models import now_millis  # noqa: E402

UNIQUE_FIELDS: Dict[str, Tuple[str, ...]] = {
    "users": ("id", "email"),
    "families": ("familyId", "aliasName"),
    "expenses": ("expenseId",),
    "join_requests": ("id",),
    "notifications": ("id",),
    "user_devices": ("fcmToken",),
    "refresh_tokens": ("token",),
}

_MISSING = object()


# --- Query evaluation ---


def _resolve(document: Any, path: str) -> Any:
    """Follow a dotted path through dicts and list indexes; _MISSING when absent."""
    value = document
    for part in path.split("."):
        if isinstance(value, dict):
            value = value.get(part, _MISSING)
        elif isinstance(value, list) and part.isdigit():
            index = int(part)
            value = value[index] if index < len(value) else _MISSING
        else:
            return _MISSING
        if value is _MISSING:
            return _MISSING
    return value


def _equals(value: Any, target: Any) -> bool:
    if value is _MISSING:
        return target is None
    if isinstance(value, list) and not isinstance(target, list):
        return target in value
    return value == target


def _compare(value: Any, target: Any, op: str) -> bool:
    if value is _MISSING or value is None or target is None:
        return False
    try:
        if op == "$gt":
            return value > target
        if op == "$gte":
            return value >= target
        if op == "$lt":
            return value < target
        return value <= target
    except TypeError:
        return False


def _match_condition(value: Any, condition: Any) -> bool:
    if not (isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition)):
        return _equals(value, condition)
    for op, target in condition.items():
        if op == "$ne":
            if _equals(value, target):
                return False
        elif op == "$in":
            if not any(_equals(value, item) for item in target):
                return False
        elif op == "$nin":
            if any(_equals(value, item) for item in target):
                return False
        elif op in ("$gt", "$gte", "$lt", "$lte"):
            if not _compare(value, target, op):
                return False
        elif op == "$exists":
            if (value is not _MISSING) != bool(target):
                return False
        elif op == "$regex":
            flags = re.IGNORECASE if "i" in condition.get("$options", "") else 0
            if not isinstance(value, str) or not re.search(target, value, flags):
                return False
        elif op == "$options":
            continue
        else:
            raise NotImplementedError(op)
    return True


def matches(document: Dict[str, Any], query: Optional[Dict[str, Any]]) -> bool:
    for key, condition in (query or {}).items():
        if key == "$and":
            if not all(matches(document, sub) for sub in condition):
                return False
        elif key == "$or":
            if not any(matches(document, sub) for sub in condition):
                return False
        elif not _match_condition(_resolve(document, key), condition):
            return False
    return True


def project(document: Dict[str, Any], projection: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    document = copy.deepcopy(document)
    if not projection:
        return document
    included = [key for key, flag in projection.items() if flag and key != "_id"]
    if included:
        result = {key: document[key] for key in included if key in document}
        if projection.get("_id", 1) and "_id" in document:
            result["_id"] = document["_id"]
        return result
    for key, flag in projection.items():
        if not flag:
            document.pop(key, None)
    return document


def _sort_key(value: Any) -> Tuple[int, Any]:
    return (0, 0) if value is None or value is _MISSING else (1, value)


def sort_documents(documents: List[Dict[str, Any]], spec: List[Tuple[str, int]]) -> List[Dict[str, Any]]:
    ordered = list(documents)
    for field, direction in reversed(spec):
        ordered.sort(key=lambda doc: _sort_key(_resolve(doc, field)), reverse=direction < 0)
    return ordered


def _normalize_sort(key_or_list: Any, direction: Optional[int] = None) -> List[Tuple[str, int]]:
    if isinstance(key_or_list, str):
        return [(key_or_list, direction if direction is not None else 1)]
    return list(key_or_list)


# --- Updates ---


def _set_path(document: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    target = document
    for part in parts[:-1]:
        target = target.setdefault(part, {})
    target[parts[-1]] = value


def apply_update(document: Dict[str, Any], update: Dict[str, Any], inserting: bool = False) -> None:
    for op, fields in update.items():
        for field, value in fields.items():
            if op == "$set" or (op == "$setOnInsert" and inserting):
                _set_path(document, field, copy.deepcopy(value))
            elif op == "$setOnInsert":
                continue
            elif op == "$push":
                document.setdefault(field, []).append(copy.deepcopy(value))
            elif op == "$addToSet":
                values = document.setdefault(field, [])
                if value not in values:
                    values.append(copy.deepcopy(value))
            elif op == "$pull":
                document[field] = [item for item in document.get(field, []) if item != value]
            elif op == "$inc":
                document[field] = document.get(field, 0) + value
            else:
                raise NotImplementedError(op)


# --- Collection fakes ---


class FakeCursor:
    def __init__(self, documents: List[Dict[str, Any]], projection: Optional[Dict[str, Any]]):
        self._documents = documents
        self._projection = projection
        self._sort: List[Tuple[str, int]] = []
        self._skip = 0
        self._limit = 0

    def sort(self, key_or_list, direction=None):
        self._sort = _normalize_sort(key_or_list, direction)
        return self

    def skip(self, count: int):
        self._skip = count
        return self

    def limit(self, count: int):
        self._limit = count
        return self

    async def to_list(self, length: Optional[int] = None) -> List[Dict[str, Any]]:
        documents = sort_documents(self._documents, self._sort) if self._sort else list(self._documents)
        documents = documents[self._skip :]
        if self._limit:
            documents = documents[: self._limit]
        if length:
            documents = documents[:length]
        return [project(doc, self._projection) for doc in documents]


class FakeCollection:
    """Async subset of AsyncIOMotorCollection backed by a list of dicts."""

    def __init__(self, name: str, unique_fields: Tuple[str, ...] = ()):
        self.name = name
        self.unique_fields = unique_fields
        self.documents: List[Dict[str, Any]] = []

    def _check_unique(self, candidate: Dict[str, Any], ignore: Optional[Dict[str, Any]] = None) -> None:
        for field in self.unique_fields:
            value = candidate.get(field)
            if value is None:
                continue
            for existing in self.documents:
                if existing is not ignore and existing.get(field) == value:
                    raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} index: {field}_1")

    def _matching(self, query: Optional[Dict[str, Any]]) -> List[Dict[str, Any]]:
        return [doc for doc in self.documents if matches(doc, query)]

    def _first(self, query, sort=None) -> Optional[Dict[str, Any]]:
        found = self._matching(query)
        if sort:
            found = sort_documents(found, _normalize_sort(sort))
        return found[0] if found else None

    async def insert_one(self, document: Dict[str, Any], session=None):
        document.setdefault("_id", ObjectId())
        self._check_unique(document)
        self.documents.append(copy.deepcopy(document))
        return SimpleNamespace(inserted_id=document["_id"], acknowledged=True)

    def find(self, query: Optional[Dict[str, Any]] = None, projection: Optional[Dict[str, Any]] = None, session=None):
        return FakeCursor(self._matching(query), projection)

    async def find_one(self, query=None, projection=None, session=None, sort=None):
        document = self._first(query, sort)
        return project(document, projection) if document is not None else None

    async def count_documents(self, query: Dict[str, Any], session=None) -> int:
        return len(self._matching(query))

    def _upsert(self, query: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        document: Dict[str, Any] = {"_id": ObjectId()} if "_id" not in query else {}
        for key, value in query.items():
            if not key.startswith("$") and not isinstance(value, dict):
                _set_path(document, key, value)
        apply_update(document, update, inserting=True)
        self._check_unique(document)
        self.documents.append(document)
        return document

    async def _update(self, query, update, many: bool, upsert: bool):
        targets = self._matching(query)
        if not many:
            targets = targets[:1]
        modified = 0
        for document in targets:
            before = copy.deepcopy(document)
            apply_update(document, update)
            if document != before:
                self._check_unique(document, ignore=document)
                modified += 1
        upserted_id = None
        if not targets and upsert:
            upserted_id = self._upsert(query, update)["_id"]
        return SimpleNamespace(matched_count=len(targets), modified_count=modified, upserted_id=upserted_id)

    async def update_one(self, query, update, upsert: bool = False, session=None):
        return await self._update(query, update, many=False, upsert=upsert)

    async def update_many(self, query, update, upsert: bool = False, session=None):
        return await self._update(query, update, many=True, upsert=upsert)

    async def find_one_and_update(
        self, query, update, projection=None, sort=None, upsert: bool = False, return_document=False, session=None
    ):
        document = self._first(query, sort)
        if document is None:
            if not upsert:
                return None
            document = self._upsert(query, update)
            return project(document, projection) if return_document else None
        before = copy.deepcopy(document)
        apply_update(document, update)
        return project(document if return_document else before, projection)

    async def delete_one(self, query, session=None):
        document = self._first(query)
        if document is not None:
            self.documents.remove(document)
        return SimpleNamespace(deleted_count=1 if document is not None else 0)

    async def delete_many(self, query, session=None):
        targets = self._matching(query)
        for document in targets:
            self.documents.remove(document)
        return SimpleNamespace(deleted_count=len(targets))

    async def create_index(self, *args, **kwargs):
        return "index"


class FakeDatabaseManager:
    """Drop-in for DatabaseManager: named collections, no-op query logging, no transactions."""

    def __init__(self):
        self.collections: Dict[str, FakeCollection] = {}
        self.transactions_supported = False

    def get_collection(self, collection_name: str) -> FakeCollection:
        if collection_name not in self.collections:
            self.collections[collection_name] = FakeCollection(collection_name, UNIQUE_FIELDS.get(collection_name, ()))
        return self.collections[collection_name]

    @asynccontextmanager
    async def transaction(self):
        yield None

    def log_query_start(self, collection_name, operation, query=None, options=None) -> float:
        return time.time()

    def log_query_success(self, collection_name, operation, start_time, result_count=None, result_info=None):
        pass

    def log_query_error(self, collection_name, operation, start_time, error, query=None):
        pass

    async def health_check(self) -> bool:
        return True


# --- Fixtures ---


@pytest.fixture
def fake_db():
    return FakeDatabaseManager()


@pytest.fixture
def mock_notifications():
    """Notification manager double; every workflow hook is awaitable and records its calls."""
    notifications = AsyncMock()
    notifications.tokens_for_user.return_value = []
    notifications.push_to_tokens.return_value = PushResult()
    return notifications


@pytest.fixture
def mock_push():
    push = AsyncMock()
    push.send_to_tokens.return_value = PushResult(success_count=1)
    return push


def make_user(user_id: str, email: Optional[str] = None, **overrides) -> Dict[str, Any]:
    now = now_millis()
    user = {
        "id": user_id,
        "name": user_id.capitalize(),
        "email": email or f"{user_id}@example.com",
        "aliasName": None,
        "familyId": None,
        "currencyPreference": "₹",
        "fcmToken": None,
        "onboardingCompleted": True,
        "isActive": True,
        "createdAt": now,
        "updatedAt": now,
    }
    user.update(overrides)
    return user


@pytest.fixture
def user_factory(fake_db):
    """Insert a user into the fake users collection and return a copy of the stored document."""

    async def create(user_id: str, **overrides) -> Dict[str, Any]:
        user = make_user(user_id, **overrides)
        await fake_db.get_collection("users").insert_one(user)
        user.pop("_id", None)
        return user

    return create


@pytest.fixture
def reload_user(fake_db):
    """Fetch the current state of a user, as the auth dependency would on the next request."""

    async def load(user_id: str) -> Dict[str, Any]:
        return await fake_db.get_collection("users").find_one({"id": user_id}, {"_id": 0})

    return load
