"""Document store abstraction with a SQLite-backed implementation."""

from __future__ import annotations

import json
import sqlite3
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from threading import RLock
from typing import Any, Iterable, Mapping, Optional
from uuid import uuid4

from venue_pricing.utils.logger import get_logger
from venue_pricing.utils.time_utils import to_iso


logger = get_logger(__name__)

Document = dict[str, Any]
Filter = Mapping[str, Any]

_MISSING = object()


class DocumentStore(ABC):
    """Minimal find/insert/update contract the pricing core relies on."""

    @abstractmethod
    def find(self, collection: str, filter_: Optional[Filter] = None) -> list[Document]:
        """Return matching documents in insertion order."""

    @abstractmethod
    def insert_one(self, collection: str, document: Mapping[str, Any]) -> str:
        """Insert a document and return its generated ``_id``."""

    @abstractmethod
    def update_one(self, collection: str, filter_: Filter, update: Mapping[str, Any]) -> int:
        """Apply ``{"$set": {...}}`` to the first match; return modified count."""

    @abstractmethod
    def update_many(self, collection: str, filter_: Filter, update: Mapping[str, Any]) -> int:
        """Apply ``{"$set": {...}}`` to every match; return modified count."""

    def find_one(self, collection: str, filter_: Optional[Filter] = None) -> Optional[Document]:
        matches = self.find(collection, filter_)
        return matches[0] if matches else None

    def count(self, collection: str, filter_: Optional[Filter] = None) -> int:
        return len(self.find(collection, filter_))


def encode_value(value: Any) -> Any:
    """Convert datetimes (recursively) to sortable ISO strings for storage."""
    if isinstance(value, datetime):
        return to_iso(value)
    if isinstance(value, Mapping):
        return {str(key): encode_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [encode_value(item) for item in value]
    if hasattr(value, "value") and isinstance(getattr(value, "value"), str):
        return value.value
    return value


def _lookup(document: Mapping[str, Any], path: str) -> Any:
    current: Any = document
    for part in path.split("."):
        if not isinstance(current, Mapping) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _compare(value: Any, operator: str, operand: Any) -> bool:
    if operator == "$exists":
        return (value is not _MISSING) == bool(operand)
    if operator == "$ne":
        return value is _MISSING or value != operand
    if operator == "$in":
        return value is not _MISSING and value in operand
    if operator == "$nin":
        return value is _MISSING or value not in operand
    if value is _MISSING or value is None or operand is None:
        return False
    try:
        if operator == "$gt":
            return value > operand
        if operator == "$gte":
            return value >= operand
        if operator == "$lt":
            return value < operand
        if operator == "$lte":
            return value <= operand
    except TypeError:
        return False
    raise ValueError(f"unsupported filter operator {operator}")


def matches_filter(document: Mapping[str, Any], filter_: Optional[Filter]) -> bool:
    """Evaluate a Mongo-style filter (equality, comparison, ``$or``) in memory."""
    if not filter_:
        return True
    for key, condition in filter_.items():
        if key == "$or":
            if not any(matches_filter(document, branch) for branch in condition):
                return False
            continue
        value = _lookup(document, key)
        if isinstance(condition, Mapping) and condition and all(
            str(op).startswith("$") for op in condition
        ):
            for operator, operand in condition.items():
                if not _compare(value, operator, encode_value(operand)):
                    return False
            continue
        if value is _MISSING or value != encode_value(condition):
            return False
    return True


def _apply_set(document: Document, assignments: Mapping[str, Any]) -> Document:
    for path, value in assignments.items():
        parts = path.split(".")
        target = document
        for part in parts[:-1]:
            nested = target.get(part)
            if not isinstance(nested, dict):
                nested = {}
                target[part] = nested
            target = nested
        target[parts[-1]] = encode_value(value)
    return document


class SQLiteDocumentStore(DocumentStore):
    """JSON documents in one SQLite table; row id doubles as creation order."""

    def __init__(self, database_path: Path | str) -> None:
        self._db_path = Path(database_path)
        self._db_path.parent.mkdir(parents=True, exist_ok=True)
        self._write_lock = RLock()

    @property
    def database_path(self) -> Path:
        return self._db_path

    def _connect(self) -> sqlite3.Connection:
        connection = sqlite3.connect(self._db_path)
        connection.row_factory = sqlite3.Row
        return connection

    def initialize(self) -> None:
        """Create the document table and its lookup index."""
        try:
            with self._connect() as conn:
                cursor = conn.cursor()
                cursor.execute(
                    """
                    CREATE TABLE IF NOT EXISTS Documents (
                        seq INTEGER PRIMARY KEY AUTOINCREMENT,
                        collection TEXT NOT NULL,
                        doc_id TEXT NOT NULL,
                        body TEXT NOT NULL,
                        created_at DATETIME DEFAULT CURRENT_TIMESTAMP,
                        UNIQUE (collection, doc_id)
                    );
                    """
                )
                cursor.execute(
                    """
                    CREATE INDEX IF NOT EXISTS idx_documents_collection
                    ON Documents(collection, seq);
                    """
                )
                conn.commit()
            logger.info("Document store initialized at %s", self._db_path)
        except sqlite3.Error as exc:
            raise RuntimeError(f"Document store initialization failed: {exc}") from exc

    def _load(self, collection: str) -> list[tuple[int, Document]]:
        with self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                SELECT seq, doc_id, body
                FROM Documents
                WHERE collection = ?
                ORDER BY seq ASC;
                """,
                (collection,),
            )
            rows = []
            for row in cursor.fetchall():
                document = json.loads(row["body"])
                document["_id"] = str(row["doc_id"])
                document["_seq"] = int(row["seq"])
                rows.append((int(row["seq"]), document))
            return rows

    def find(self, collection: str, filter_: Optional[Filter] = None) -> list[Document]:
        return [
            document
            for _, document in self._load(collection)
            if matches_filter(document, filter_)
        ]

    def insert_one(self, collection: str, document: Mapping[str, Any]) -> str:
        doc_id = str(document.get("_id") or uuid4().hex)
        body = {
            key: value
            for key, value in encode_value(dict(document)).items()
            if key not in {"_id", "_seq"}
        }
        with self._write_lock, self._connect() as conn:
            cursor = conn.cursor()
            cursor.execute(
                """
                INSERT INTO Documents (collection, doc_id, body)
                VALUES (?, ?, ?);
                """,
                (collection, doc_id, json.dumps(body)),
            )
            conn.commit()
        return doc_id

    def _write_back(self, conn: sqlite3.Connection, seq: int, document: Document) -> None:
        body = {key: value for key, value in document.items() if key not in {"_id", "_seq"}}
        conn.execute(
            "UPDATE Documents SET body = ? WHERE seq = ?;",
            (json.dumps(body), seq),
        )

    def _update(
        self,
        collection: str,
        filter_: Filter,
        update: Mapping[str, Any],
        *,
        limit: Optional[int],
    ) -> int:
        assignments = update.get("$set")
        if not isinstance(assignments, Mapping) or set(update) != {"$set"}:
            raise ValueError("only {'$set': {...}} updates are supported")
        with self._write_lock:
            matched = [
                (seq, document)
                for seq, document in self._load(collection)
                if matches_filter(document, filter_)
            ]
            if limit is not None:
                matched = matched[:limit]
            if not matched:
                return 0
            with self._connect() as conn:
                for seq, document in matched:
                    self._write_back(conn, seq, _apply_set(document, assignments))
                conn.commit()
            return len(matched)

    def update_one(self, collection: str, filter_: Filter, update: Mapping[str, Any]) -> int:
        return self._update(collection, filter_, update, limit=1)

    def update_many(self, collection: str, filter_: Filter, update: Mapping[str, Any]) -> int:
        return self._update(collection, filter_, update, limit=None)

    def insert_many(self, collection: str, documents: Iterable[Mapping[str, Any]]) -> list[str]:
        return [self.insert_one(collection, document) for document in documents]
