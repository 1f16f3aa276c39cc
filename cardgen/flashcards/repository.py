"""Flashcard persistence.

Records are plain dicts with the columns of the ``flashcards`` table. Every
read filters out soft-deleted rows.
"""
import os
import math
import threading
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Protocol, Tuple

from cardgen.flashcards.models import FlashcardListQuery, FlashcardSource
from cardgen.utils import get_logger

LOG = get_logger()

DATABASE_URL = os.getenv('DATABASE_URL')
DB_POOL_MIN = int(os.getenv('DB_POOL_MIN', '1'))
DB_POOL_MAX = int(os.getenv('DB_POOL_MAX', '10'))

UPDATABLE_FIELDS = ('front_text', 'back_text', 'front_text_hash', 'back_text_hash', 'source', 'difficulty', 'due', 'reps', 'scheduled_days', 'updated_at')

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS flashcards (
    id UUID PRIMARY KEY,
    user_id TEXT NOT NULL,
    front_text VARCHAR(200) NOT NULL,
    back_text VARCHAR(500) NOT NULL,
    front_text_hash CHAR(64) NOT NULL,
    back_text_hash CHAR(64) NOT NULL,
    source VARCHAR(16) NOT NULL CHECK (source IN ('ai-full', 'ai-edit', 'manual')),
    difficulty REAL NOT NULL DEFAULT 0,
    due TIMESTAMPTZ NOT NULL DEFAULT now(),
    reps INTEGER NOT NULL DEFAULT 0,
    scheduled_days INTEGER NOT NULL DEFAULT 0,
    is_deleted BOOLEAN NOT NULL DEFAULT false,
    created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
    updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
);
CREATE INDEX IF NOT EXISTS idx_flashcards_user_front_hash ON flashcards (user_id, front_text_hash) WHERE NOT is_deleted;
CREATE INDEX IF NOT EXISTS idx_flashcards_user_created ON flashcards (user_id, created_at DESC) WHERE NOT is_deleted;
"""


class RepositoryError(Exception):
    pass


class FlashcardRepository(Protocol):
    """What the duplicate detector and the save path need from storage."""

    def find_by_hash(self, user_id: str, front_text_hash: str) -> Optional[Dict[str, Any]]: ...

    def list_active(self, user_id: str) -> List[Dict[str, Any]]: ...

    def insert(self, record: Dict[str, Any]) -> Dict[str, Any]: ...

    def update(self, flashcard_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]: ...

    def soft_delete(self, flashcard_id: str) -> bool: ...

    def get(self, user_id: str, flashcard_id: str) -> Optional[Dict[str, Any]]: ...

    def list_page(self, user_id: str, query: FlashcardListQuery) -> Tuple[List[Dict[str, Any]], int]: ...

    def count_by_source(self, user_id: str) -> Dict[str, int]: ...

    def count_due(self, user_id: str, before: datetime) -> int: ...

    def total_reviews(self, user_id: str) -> int: ...

    def ping(self) -> bool: ...


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_record(user_id: str, front_text: str, back_text: str, front_text_hash: str, back_text_hash: str, source: str) -> Dict[str, Any]:
    now = utcnow()
    return {
        'id': str(uuid.uuid4()),
        'user_id': user_id,
        'front_text': front_text,
        'back_text': back_text,
        'front_text_hash': front_text_hash,
        'back_text_hash': back_text_hash,
        'source': source,
        'difficulty': 0.0,
        'due': now,
        'reps': 0,
        'scheduled_days': 0,
        'is_deleted': False,
        'created_at': now,
        'updated_at': now,
    }


class InMemoryFlashcardRepository:
    """Process-local store used for development and tests."""

    def __init__(self):
        self._rows: Dict[str, Dict[str, Any]] = {}
        # CRUD endpoints run in the threadpool
        self._lock = threading.Lock()

    def _active(self, user_id: str) -> List[Dict[str, Any]]:
        return [r for r in self._rows.values() if r['user_id'] == user_id and not r['is_deleted']]

    def find_by_hash(self, user_id: str, front_text_hash: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            for r in self._active(user_id):
                if r['front_text_hash'] == front_text_hash:
                    return dict(r)
        return None

    def list_active(self, user_id: str) -> List[Dict[str, Any]]:
        with self._lock:
            rows = sorted(self._active(user_id), key=lambda r: r['created_at'], reverse=True)
            return [dict(r) for r in rows]

    def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        with self._lock:
            self._rows[str(record['id'])] = dict(record)
            return dict(record)

    def update(self, flashcard_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(str(flashcard_id))
            if row is None or row['is_deleted']:
                return None
            row.update({k: v for k, v in fields.items() if k in UPDATABLE_FIELDS})
            return dict(row)

    def soft_delete(self, flashcard_id: str) -> bool:
        with self._lock:
            row = self._rows.get(str(flashcard_id))
            if row is None or row['is_deleted']:
                return False
            row['is_deleted'] = True
            row['updated_at'] = utcnow()
            return True

    def get(self, user_id: str, flashcard_id: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            row = self._rows.get(str(flashcard_id))
            if row is None or row['is_deleted'] or row['user_id'] != user_id:
                return None
            return dict(row)

    def list_page(self, user_id: str, query: FlashcardListQuery) -> Tuple[List[Dict[str, Any]], int]:
        with self._lock:
            rows = self._active(user_id)
        if query.source:
            rows = [r for r in rows if r['source'] == query.source.value]
        if query.due_before:
            rows = [r for r in rows if r['due'] <= query.due_before]
        rows.sort(key=lambda r: r[query.sort.value], reverse=query.order.value == 'desc')
        offset = (query.page - 1) * query.limit
        return [dict(r) for r in rows[offset:offset + query.limit]], len(rows)

    def count_by_source(self, user_id: str) -> Dict[str, int]:
        counts = {s.value: 0 for s in FlashcardSource}
        with self._lock:
            for r in self._active(user_id):
                counts[r['source']] = counts.get(r['source'], 0) + 1
        return counts

    def count_due(self, user_id: str, before: datetime) -> int:
        with self._lock:
            return sum(1 for r in self._active(user_id) if r['due'] <= before)

    def total_reviews(self, user_id: str) -> int:
        with self._lock:
            return sum(r['reps'] for r in self._active(user_id))

    def ping(self) -> bool:
        return True


class PostgresFlashcardRepository:
    """psycopg2-backed store. Connections come from a pool, one per call."""

    def __init__(self, dsn: Optional[str] = None, pool=None):
        if pool is not None:
            self._pool = pool
        else:
            from psycopg2 import pool as pg_pool
            # CRUD handlers run on the threadpool, so the pool is shared across threads
            self._pool = pg_pool.ThreadedConnectionPool(DB_POOL_MIN, DB_POOL_MAX, dsn or DATABASE_URL)
            LOG.info('postgres_pool_created', extra={'min': DB_POOL_MIN, 'max': DB_POOL_MAX})

    def _run(self, sql: str, params=None, fetch: str = None, commit: bool = False):
        from psycopg2.extras import RealDictCursor
        conn = None
        try:
            conn = self._pool.getconn()
            cur = conn.cursor(cursor_factory=RealDictCursor)
            try:
                cur.execute(sql, params)
                if fetch == 'one':
                    row = cur.fetchone()
                    result = dict(row) if row is not None else None
                elif fetch == 'all':
                    result = [dict(r) for r in cur.fetchall()]
                else:
                    result = cur.rowcount
            finally:
                cur.close()
            if commit:
                conn.commit()
            return result
        except Exception as e:
            if conn is not None:
                conn.rollback()
            LOG.exception('postgres_query_failed', exc_info=True)
            raise RepositoryError(str(e)) from e
        finally:
            if conn is not None:
                self._pool.putconn(conn)

    def init_schema(self):
        self._run(SCHEMA_SQL, commit=True)

    def find_by_hash(self, user_id: str, front_text_hash: str) -> Optional[Dict[str, Any]]:
        return self._run(
            'SELECT * FROM flashcards WHERE user_id = %s AND front_text_hash = %s AND NOT is_deleted LIMIT 1',
            (user_id, front_text_hash),
            fetch='one',
        )

    def list_active(self, user_id: str) -> List[Dict[str, Any]]:
        return self._run(
            'SELECT * FROM flashcards WHERE user_id = %s AND NOT is_deleted ORDER BY created_at DESC',
            (user_id,),
            fetch='all',
        )

    def insert(self, record: Dict[str, Any]) -> Dict[str, Any]:
        cols = list(record.keys())
        sql = 'INSERT INTO flashcards ({}) VALUES ({}) RETURNING *'.format(', '.join(cols), ', '.join(['%s'] * len(cols)))
        return self._run(sql, tuple(record[c] for c in cols), fetch='one', commit=True)

    def update(self, flashcard_id: str, fields: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        cols = [c for c in fields if c in UPDATABLE_FIELDS]
        if not cols:
            return self._run('SELECT * FROM flashcards WHERE id = %s AND NOT is_deleted', (flashcard_id,), fetch='one')
        assignments = ', '.join(f'{c} = %s' for c in cols)
        sql = f'UPDATE flashcards SET {assignments} WHERE id = %s AND NOT is_deleted RETURNING *'
        return self._run(sql, tuple(fields[c] for c in cols) + (flashcard_id,), fetch='one', commit=True)

    def soft_delete(self, flashcard_id: str) -> bool:
        count = self._run(
            'UPDATE flashcards SET is_deleted = true, updated_at = now() WHERE id = %s AND NOT is_deleted',
            (flashcard_id,),
            commit=True,
        )
        return bool(count)

    def get(self, user_id: str, flashcard_id: str) -> Optional[Dict[str, Any]]:
        return self._run(
            'SELECT * FROM flashcards WHERE id = %s AND user_id = %s AND NOT is_deleted',
            (flashcard_id, user_id),
            fetch='one',
        )

    def list_page(self, user_id: str, query: FlashcardListQuery) -> Tuple[List[Dict[str, Any]], int]:
        where = ['user_id = %s', 'NOT is_deleted']
        params: List[Any] = [user_id]
        if query.source:
            where.append('source = %s')
            params.append(query.source.value)
        if query.due_before:
            where.append('due <= %s')
            params.append(query.due_before)
        clause = ' AND '.join(where)
        # sort and order are enum-validated, safe to interpolate
        order = f'{query.sort.value} {query.order.value.upper()}'
        total = self._run(f'SELECT COUNT(*) AS n FROM flashcards WHERE {clause}', tuple(params), fetch='one')['n']
        rows = self._run(
            f'SELECT * FROM flashcards WHERE {clause} ORDER BY {order} LIMIT %s OFFSET %s',
            tuple(params) + (query.limit, (query.page - 1) * query.limit),
            fetch='all',
        )
        return rows, int(total)

    def count_by_source(self, user_id: str) -> Dict[str, int]:
        counts = {s.value: 0 for s in FlashcardSource}
        rows = self._run(
            'SELECT source, COUNT(*) AS n FROM flashcards WHERE user_id = %s AND NOT is_deleted GROUP BY source',
            (user_id,),
            fetch='all',
        )
        for r in rows:
            counts[r['source']] = int(r['n'])
        return counts

    def count_due(self, user_id: str, before: datetime) -> int:
        row = self._run('SELECT COUNT(*) AS n FROM flashcards WHERE user_id = %s AND NOT is_deleted AND due <= %s', (user_id, before), fetch='one')
        return int(row['n'])

    def total_reviews(self, user_id: str) -> int:
        row = self._run('SELECT COALESCE(SUM(reps), 0) AS n FROM flashcards WHERE user_id = %s AND NOT is_deleted', (user_id,), fetch='one')
        return int(row['n'])

    def ping(self) -> bool:
        try:
            self._run('SELECT 1', fetch='one')
            return True
        except RepositoryError:
            return False

    def close(self):
        self._pool.closeall()


def make_repository() -> FlashcardRepository:
    if DATABASE_URL:
        return PostgresFlashcardRepository(DATABASE_URL)
    LOG.info('DATABASE_URL not set, using in-memory flashcard repository')
    return InMemoryFlashcardRepository()


def total_pages(total: int, limit: int) -> int:
    return int(math.ceil(total / limit)) if limit else 0
