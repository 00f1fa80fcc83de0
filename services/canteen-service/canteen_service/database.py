from __future__ import annotations

import json
import os
import sqlite3
import time
import uuid
from datetime import datetime, timezone
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS documents (
    collection TEXT NOT NULL,
    id TEXT NOT NULL,
    data_json TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (collection, id)
);

CREATE INDEX IF NOT EXISTS idx_documents_collection ON documents (collection);
"""


def _build_database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "kantin")
    password = os.environ.get("DB_PASSWORD", "kantin")
    host = os.environ.get("DB_HOST", "canteen-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "canteen_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = _build_database_url()


def get_connection():
    """Return a connection against Postgres (default) or SQLite when configured."""
    retries = int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    last_exc: Exception | None = None
    for attempt in range(retries):
        try:
            return _connect_once()
        except Exception as exc:  # pragma: no cover - only hits when DB down
            last_exc = exc
            if attempt == retries - 1:
                raise
            time.sleep(delay)
    raise last_exc  # pragma: no cover


def _connect_once():
    if DATABASE_URL.startswith("sqlite://"):
        path = DATABASE_URL.replace("sqlite:///", "")
        conn = sqlite3.connect(path, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        return conn

    return psycopg.connect(DATABASE_URL, autocommit=True, row_factory=dict_row)


def init_db() -> None:
    with get_connection() as conn:
        apply_schema(conn)
        seed_if_empty(conn)


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def seed_if_empty(conn) -> None:
    """Insert a starter menu for every canteen when the catalog is empty."""
    foods = [
        ("Nasi Goreng", "Nasi goreng telur dan kerupuk", 15000, "A"),
        ("Es Teh Manis", "Teh manis dingin", 5000, "A"),
        ("Mie Ayam", "Mie ayam dengan pangsit", 13000, "B"),
        ("Soto Ayam", "Soto ayam kuah bening", 14000, "B"),
        ("Ayam Geprek", "Ayam geprek sambal bawang", 17000, "C"),
        ("Gado-Gado", "Sayur rebus dengan bumbu kacang", 12000, "C"),
        ("Bakso Urat", "Bakso urat dengan mie kuning", 16000, "D"),
        ("Jus Alpukat", "Jus alpukat segar", 10000, "D"),
    ]

    placeholder = _placeholder(conn)
    row = conn.execute(
        f"SELECT COUNT(1) AS cnt FROM documents WHERE collection = {placeholder};",
        ("foods",),
    ).fetchone()
    count = 0
    if row is not None:
        if isinstance(row, dict):
            count = row.get("cnt", 0) or 0
        else:
            count = row[0] or 0
    if count > 0:
        return

    now = datetime.now(timezone.utc).isoformat()
    rows = [
        (
            "foods",
            str(uuid.uuid4()),
            json.dumps(
                {
                    "name": name,
                    "description": description,
                    "price": price,
                    "kantin": kantin,
                    "available": True,
                }
            ),
            now,
            now,
        )
        for name, description, price, kantin in foods
    ]
    insert_documents = (
        "INSERT INTO documents (collection, id, data_json, created_at, updated_at)"
        f" VALUES ({placeholder}, {placeholder}, {placeholder}, {placeholder}, {placeholder})"
    )
    cur = conn.cursor()
    try:
        cur.executemany(insert_documents, rows)
    finally:
        cur.close()
    conn.commit()


def _placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
