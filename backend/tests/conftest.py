# backend/tests/conftest.py

"""
Shared fixtures for the weighing backend tests.

MockDB is an in-memory stand-in for the Motor database: it implements the
handful of collection methods the backend uses and yields to the event loop
on every call, so concurrent coroutines interleave the way they do against a
real database.
"""

import asyncio
import copy
import sys
from pathlib import Path
from datetime import datetime, timezone

import pytest
from pymongo.errors import DuplicateKeyError

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

from unit_conversion_engine import UnitConversionEngine
from stock_ledger import StockLedger
from label_code_generator import LabelCodeGenerator
from label_encoder import LabelEncoder
from weighing_service import WeighingService


class InsertOneResult:
    def __init__(self, inserted_id):
        self.inserted_id = inserted_id


class UpdateResult:
    def __init__(self, matched_count, modified_count):
        self.matched_count = matched_count
        self.modified_count = modified_count


class DeleteResult:
    def __init__(self, deleted_count):
        self.deleted_count = deleted_count


def _matches(doc, query):
    for field, condition in query.items():
        value = doc.get(field)
        if isinstance(condition, dict) and condition and all(k.startswith("$") for k in condition):
            for op, arg in condition.items():
                if op == "$in":
                    if value not in arg:
                        return False
                elif op == "$gte":
                    if value is None or value < arg:
                        return False
                else:
                    raise NotImplementedError(op)
        elif value != condition:
            return False
    return True


def _project(doc, projection):
    result = copy.deepcopy(doc)
    if not projection:
        return result
    included = [k for k, v in projection.items() if v and k != "_id"]
    if included:
        return {k: result[k] for k in included if k in result}
    for key, flag in projection.items():
        if not flag:
            result.pop(key, None)
    return result


def _apply_update(doc, update):
    for field, value in update.get("$set", {}).items():
        doc[field] = copy.deepcopy(value)
    for field, amount in update.get("$inc", {}).items():
        doc[field] = (doc.get(field) or 0) + amount


class MockCursor:
    def __init__(self, docs):
        self.docs = docs

    def sort(self, key, direction=1):
        self.docs = sorted(self.docs, key=lambda d: d.get(key), reverse=direction < 0)
        return self

    async def to_list(self, length=None):
        await asyncio.sleep(0)
        return self.docs if length is None else self.docs[:length]


class MockCollection:
    """Mock MongoDB collection"""

    def __init__(self, name, unique_keys=()):
        self.name = name
        self.docs = []
        self.unique_keys = [tuple(key) for key in unique_keys]
        self._failures = {}

    def _check_unique(self, document):
        for key in self.unique_keys:
            value = tuple(document.get(field) for field in key)
            if any(tuple(doc.get(field) for field in key) == value for doc in self.docs):
                raise DuplicateKeyError(f"E11000 duplicate key error collection: {self.name} dup key: {value}")

    def fail_on(self, method, error, times=1):
        """Make the next `times` calls of `method` raise `error`."""
        self._failures[method] = [error, times]

    async def _enter(self, method):
        await asyncio.sleep(0)
        failure = self._failures.get(method)
        if failure and failure[1] > 0:
            failure[1] -= 1
            raise failure[0]

    async def find_one(self, query, projection=None):
        await self._enter("find_one")
        for doc in self.docs:
            if _matches(doc, query):
                return _project(doc, projection)
        return None

    def find(self, query=None, projection=None):
        return MockCursor([_project(d, projection) for d in self.docs if _matches(d, query or {})])

    async def insert_one(self, document):
        await self._enter("insert_one")
        self._check_unique(document)
        self.docs.append(copy.deepcopy(document))
        return InsertOneResult(document.get("id"))

    async def update_one(self, query, update):
        await self._enter("update_one")
        for doc in self.docs:
            if _matches(doc, query):
                _apply_update(doc, update)
                return UpdateResult(1, 1)
        return UpdateResult(0, 0)

    async def find_one_and_update(self, query, update, upsert=False, return_document=False, projection=None):
        await self._enter("find_one_and_update")
        for doc in self.docs:
            if _matches(doc, query):
                before = copy.deepcopy(doc)
                _apply_update(doc, update)
                return _project(doc if return_document else before, projection)
        if not upsert:
            return None
        doc = {k: v for k, v in query.items() if not isinstance(v, dict)}
        _apply_update(doc, update)
        self.docs.append(doc)
        return _project(doc, projection) if return_document else None

    async def delete_one(self, query):
        await self._enter("delete_one")
        for index, doc in enumerate(self.docs):
            if _matches(doc, query):
                del self.docs[index]
                return DeleteResult(1)
        return DeleteResult(0)

    async def count_documents(self, query):
        await asyncio.sleep(0)
        return sum(1 for d in self.docs if _matches(d, query))


# Unique indexes created by server.startup_event
UNIQUE_INDEXES = {
    "labels": [("label_code",)],
    "stock_movements": [("compound_id", "ledger_version")],
    "counters": [("collection",)]
}


class MockDB:
    """Mock MongoDB database"""

    def __init__(self):
        self._collections = {}

    def __getattr__(self, name):
        if name.startswith("_"):
            raise AttributeError(name)
        if name not in self._collections:
            self._collections[name] = MockCollection(name, UNIQUE_INDEXES.get(name, ()))
        return self._collections[name]

    async def command(self, name):
        return {"ok": 1}


FIXED_NOW = datetime(2025, 10, 18, 9, 30, tzinfo=timezone.utc)


@pytest.fixture
def mock_db():
    """Mock MongoDB database"""
    return MockDB()


@pytest.fixture
def units():
    return UnitConversionEngine()


@pytest.fixture
def ledger(mock_db):
    return StockLedger(mock_db)


@pytest.fixture
def code_generator(mock_db):
    return LabelCodeGenerator(mock_db)


@pytest.fixture
def encoder():
    return LabelEncoder()


@pytest.fixture
def service(mock_db, ledger, code_generator, encoder):
    return WeighingService(
        mock_db,
        ledger=ledger,
        code_generator=code_generator,
        encoder=encoder,
        clock=lambda: FIXED_NOW
    )


@pytest.fixture
def sample_compound(mock_db):
    """Atrazine, 500 mg in stock, critical at 50 mg"""
    compound = {
        "id": "ATRAZINE_UUID",
        "name": "Atrazine",
        "cas_number": "1912-24-9",
        "solvent": "Acetone",
        "stock_value": 500.0,
        "stock_unit": "mg",
        "critical_value": 50.0,
        "critical_unit": "mg"
    }
    mock_db.compounds.docs.append(dict(compound))
    return compound


@pytest.fixture
def low_stock_compound(mock_db):
    """Simazine, 5 mg in stock"""
    compound = {
        "id": "SIMAZINE_UUID",
        "name": "Simazine",
        "cas_number": "122-34-9",
        "solvent": "Methanol",
        "stock_value": 5.0,
        "stock_unit": "mg",
        "critical_value": 1.0,
        "critical_unit": "mg"
    }
    mock_db.compounds.docs.append(dict(compound))
    return compound


@pytest.fixture
def gram_compound(mock_db):
    """Stock kept in grams, critical level in milligrams"""
    compound = {
        "id": "CAFFEINE_UUID",
        "name": "Caffeine",
        "cas_number": "58-08-2",
        "solvent": "Water",
        "stock_value": 1.0,
        "stock_unit": "g",
        "critical_value": 900.0,
        "critical_unit": "mg"
    }
    mock_db.compounds.docs.append(dict(compound))
    return compound
