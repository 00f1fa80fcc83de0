from __future__ import annotations

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Protocol, Sequence, Tuple

from .database import get_connection

logger = logging.getLogger(__name__)

Predicate = Callable[[dict], bool]
Document = Tuple[str, dict]
Listener = Callable[[List[Document]], None]


class CollectionUnavailableError(Exception):
    """Raised when a collection cannot be read or written."""

    def __init__(self, collection: str, message: str | None = None):
        super().__init__(message or f"Collection {collection} ist nicht verfügbar.")
        self.collection = collection


class DocumentNotFoundError(Exception):
    """Raised when an update targets a document that does not exist."""


class BatchDeleteError(Exception):
    """Raised when an atomic batch delete was rolled back."""


class RecordStore(Protocol):
    def create(self, collection: str, record: dict) -> str: ...

    def get(self, collection: str, store_id: str) -> Optional[dict]: ...

    def update(self, collection: str, store_id: str, changes: dict) -> None: ...

    def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]: ...

    def subscribe(
        self, collection: str, predicate: Optional[Predicate], on_change: Listener
    ) -> Callable[[], None]: ...

    def batch_delete(self, refs: Sequence[Tuple[str, str]]) -> None: ...


class SQLRecordStore:
    """Document store on top of the ``documents`` table.

    Every record is a JSON body addressed by ``(collection, id)``. The
    ``createdAt`` field is assigned by the store and returned with the body.
    Subscribers registered through :meth:`subscribe` receive the full matching
    result set after every change to their collection.
    """

    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory
        self._listeners: Dict[str, List[Tuple[Optional[Predicate], Listener]]] = {}
        self._listeners_lock = threading.Lock()

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    def create(self, collection: str, record: dict) -> str:
        store_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        body = {key: value for key, value in record.items() if key != "createdAt"}
        try:
            with self._connection() as conn:
                placeholder = _placeholder(conn)
                conn.execute(
                    f"""
                    INSERT INTO documents (collection, id, data_json, created_at, updated_at)
                    VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder});
                    """,
                    (collection, store_id, json.dumps(body), now, now),
                )
                conn.commit()
        except Exception as exc:
            raise CollectionUnavailableError(
                collection, f"Collection {collection} konnte nicht beschrieben werden: {exc}"
            ) from exc
        self._notify(collection)
        return store_id

    def get(self, collection: str, store_id: str) -> Optional[dict]:
        with self._connection() as conn:
            placeholder = _placeholder(conn)
            row = conn.execute(
                f"""
                SELECT id, data_json, created_at
                FROM documents
                WHERE collection = {placeholder} AND id = {placeholder};
                """,
                (collection, store_id),
            ).fetchone()
        if row is None:
            return None
        return _row_to_body(row)

    def update(self, collection: str, store_id: str, changes: dict) -> None:
        now = datetime.now(timezone.utc).isoformat()
        try:
            with self._connection() as conn:
                placeholder = _placeholder(conn)
                row = conn.execute(
                    f"""
                    SELECT data_json FROM documents
                    WHERE collection = {placeholder} AND id = {placeholder};
                    """,
                    (collection, store_id),
                ).fetchone()
                if row is None:
                    raise DocumentNotFoundError(
                        f"Dokument {store_id} in {collection} ist unbekannt."
                    )
                body = json.loads(row["data_json"])
                body.update({key: value for key, value in changes.items() if key != "createdAt"})
                conn.execute(
                    f"""
                    UPDATE documents
                    SET data_json = {placeholder}, updated_at = {placeholder}
                    WHERE collection = {placeholder} AND id = {placeholder};
                    """,
                    (json.dumps(body), now, collection, store_id),
                )
                conn.commit()
        except DocumentNotFoundError:
            raise
        except Exception as exc:
            raise CollectionUnavailableError(
                collection, f"Collection {collection} konnte nicht aktualisiert werden: {exc}"
            ) from exc
        self._notify(collection)

    def query(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        try:
            with self._connection() as conn:
                placeholder = _placeholder(conn)
                rows = conn.execute(
                    f"""
                    SELECT id, data_json, created_at
                    FROM documents
                    WHERE collection = {placeholder}
                    ORDER BY created_at DESC;
                    """,
                    (collection,),
                ).fetchall()
        except Exception as exc:
            raise CollectionUnavailableError(
                collection, f"Collection {collection} konnte nicht gelesen werden: {exc}"
            ) from exc

        results: List[Document] = []
        for row in rows:
            body = _row_to_body(row)
            if predicate is None or predicate(body):
                results.append((row["id"], body))
        return results

    def subscribe(
        self, collection: str, predicate: Optional[Predicate], on_change: Listener
    ) -> Callable[[], None]:
        entry = (predicate, on_change)
        with self._listeners_lock:
            self._listeners.setdefault(collection, []).append(entry)

        def unsubscribe() -> None:
            with self._listeners_lock:
                listeners = self._listeners.get(collection, [])
                if entry in listeners:
                    listeners.remove(entry)

        self._deliver(collection, predicate, on_change)
        return unsubscribe

    def batch_delete(self, refs: Sequence[Tuple[str, str]]) -> None:
        if not refs:
            return
        try:
            with self._connection() as conn:
                placeholder = _placeholder(conn)
                with _transaction(conn):
                    for collection, store_id in refs:
                        conn.execute(
                            f"DELETE FROM documents WHERE collection = {placeholder} AND id = {placeholder};",
                            (collection, store_id),
                        )
        except Exception as exc:
            raise BatchDeleteError(f"Batch-Löschung fehlgeschlagen: {exc}") from exc

        for collection in sorted({collection for collection, _ in refs}):
            self._notify(collection)

    def _notify(self, collection: str) -> None:
        with self._listeners_lock:
            listeners = list(self._listeners.get(collection, []))
        for predicate, on_change in listeners:
            self._deliver(collection, predicate, on_change)

    def _deliver(self, collection: str, predicate: Optional[Predicate], on_change: Listener) -> None:
        try:
            on_change(self.query(collection, predicate))
        except Exception:
            logger.exception("Subscriber for collection %s failed", collection)


@contextmanager
def _transaction(conn):
    if hasattr(conn, "transaction"):
        with conn.transaction():
            yield
        return

    try:
        yield
    except Exception:
        conn.rollback()
        raise
    conn.commit()


def _row_to_body(row) -> dict:
    body = json.loads(row["data_json"])
    body["createdAt"] = row["created_at"]
    return body


def _placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
