"""
Persistence for conversation records.

Writes happen in two phases:
1. insert_harvested(): id + created_at only, idempotent (ON CONFLICT DO NOTHING)
2. patch_enrichment(): partial UPDATE of exactly the fields that were set

Bulk operator commands (reset, wipe, delete) work over id lists in bounded
chunks, one transaction per chunk.
"""

import logging
from datetime import datetime, timezone
from typing import Callable, Iterable, Iterator, Optional, Union

from psycopg2 import sql
from psycopg2.extras import RealDictCursor, execute_values

from .connection import get_connection
from .models import ConversationRecord, EnrichmentPatch, HarvestedRecord

logger = logging.getLogger(__name__)

TABLE_NAME = "conversation_topics"

MAX_CHUNK_SIZE = 1000

# Columns an enrichment patch may touch
PATCHABLE_COLUMNS = tuple(EnrichmentPatch.model_fields)

# Everything except id/created_at, cleared by reset_keeping_ids()
RESETTABLE_COLUMNS = PATCHABLE_COLUMNS + ("synced_at",)

SELECT_COLUMNS = ("id", "created_at") + RESETTABLE_COLUMNS

MISSING_ENRICHMENT_CONDITION = (
    "(transcript IS NULL OR product IS NULL OR region IS NULL OR sentiment_start IS NULL)"
)


class RecordNotFoundError(Exception):
    """A patch targeted an id that isn't in the store."""

    def __init__(self, conversation_id: str):
        super().__init__(f"Conversation {conversation_id} not found")
        self.conversation_id = conversation_id


def _chunks(items: list, size: int) -> Iterator[list]:
    for i in range(0, len(items), size):
        yield items[i:i + size]


def _window_clause(created_from: Optional[datetime], created_to: Optional[datetime]) -> tuple[list[str], list]:
    conditions, params = [], []
    if created_from is not None:
        conditions.append("created_at >= %s")
        params.append(created_from)
    if created_to is not None:
        conditions.append("created_at <= %s")
        params.append(created_to)
    return conditions, params


def _where(conditions: list[str]) -> str:
    return f"WHERE {' AND '.join(conditions)}" if conditions else ""


def _limit(limit: Optional[int], params: list) -> str:
    if limit is None:
        return ""
    params.append(limit)
    return "LIMIT %s"


class ConversationStore:
    """Keyed record store backed by the conversation_topics table.

    connection_factory is a zero-arg callable returning a connection
    context manager (defaults to db.connection.get_connection), which keeps
    the store testable with a mocked connection.
    """

    def __init__(
        self,
        connection_factory: Optional[Callable] = None,
        chunk_size: int = 200,
    ):
        self._connect = connection_factory or get_connection
        self.chunk_size = max(1, min(chunk_size, MAX_CHUNK_SIZE))

    # Phase 1

    def insert_harvested(self, records: Iterable[Union[HarvestedRecord, object]]) -> int:
        """Insert minimal rows. Existing ids are left alone.

        Accepts anything with .id and .created_at. Returns the number of
        rows actually inserted; 0 is a normal outcome on a re-run.
        """
        values = {}
        for record in records:
            values.setdefault(str(record.id), record.created_at)
        if not values:
            return 0

        query = f"""
        INSERT INTO {TABLE_NAME} (id, created_at) VALUES %s
        ON CONFLICT (id) DO NOTHING
        RETURNING id
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                inserted = execute_values(
                    cur, query, list(values.items()), page_size=self.chunk_size, fetch=True
                )
        logger.debug(f"Inserted {len(inserted)}/{len(values)} harvested ids")
        return len(inserted)

    # Phase 2

    def patch_enrichment(
        self,
        conversation_id: str,
        patch: EnrichmentPatch,
        synced_at: Optional[datetime] = None,
    ) -> None:
        """Update exactly the fields set on the patch and stamp synced_at.

        Raises:
            RecordNotFoundError: no row with that id
        """
        columns = patch.to_columns()
        unknown = set(columns) - set(PATCHABLE_COLUMNS)
        if unknown:
            raise ValueError(f"Unpatchable columns: {sorted(unknown)}")

        assignments = [
            sql.SQL("{} = %s").format(sql.Identifier(name)) for name in columns
        ]
        assignments.append(sql.SQL("synced_at = %s"))
        query = sql.SQL("UPDATE {table} SET {assignments} WHERE id = %s").format(
            table=sql.Identifier(TABLE_NAME),
            assignments=sql.SQL(", ").join(assignments),
        )
        params = list(columns.values()) + [synced_at or datetime.now(timezone.utc), conversation_id]

        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                if cur.rowcount == 0:
                    raise RecordNotFoundError(conversation_id)

    # Operator commands

    def _all_ids(self) -> list[str]:
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT id FROM {TABLE_NAME} ORDER BY id")
                return [row[0] for row in cur.fetchall()]

    def reset_keeping_ids(self) -> int:
        """Clear every field except id and created_at. Returns rows reset."""
        ids = self._all_ids()
        assignments = ", ".join(f"{name} = NULL" for name in RESETTABLE_COLUMNS)
        query = f"UPDATE {TABLE_NAME} SET {assignments} WHERE id = ANY(%s)"

        reset = 0
        for chunk in _chunks(ids, self.chunk_size):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(query, (chunk,))
                    reset += cur.rowcount
            logger.info(f"Reset {reset}/{len(ids)} records")
        return reset

    def delete_ids(self, ids: Iterable[str]) -> int:
        """Delete the given ids in chunks. Returns rows deleted."""
        id_list = list(dict.fromkeys(str(i) for i in ids))
        deleted = 0
        for chunk in _chunks(id_list, self.chunk_size):
            with self._connect() as conn:
                with conn.cursor() as cur:
                    cur.execute(f"DELETE FROM {TABLE_NAME} WHERE id = ANY(%s)", (chunk,))
                    deleted += cur.rowcount
        return deleted

    def wipe_all(self) -> int:
        """Delete every record. Returns rows deleted."""
        ids = self._all_ids()
        deleted = self.delete_ids(ids)
        logger.info(f"Wiped {deleted} records")
        return deleted

    # Queries

    def _fetch_records(self, query: str, params: list) -> list[ConversationRecord]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(query, params)
                return [ConversationRecord(**row) for row in cur.fetchall()]

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        with self._connect() as conn:
            with conn.cursor(cursor_factory=RealDictCursor) as cur:
                cur.execute(
                    f"SELECT {', '.join(SELECT_COLUMNS)} FROM {TABLE_NAME} WHERE id = %s",
                    (conversation_id,),
                )
                row = cur.fetchone()
        return ConversationRecord(**row) if row else None

    def ids_missing_enrichment(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[str]:
        """Ids with any of transcript/product/region/sentiment_start unset, oldest first."""
        conditions, params = _window_clause(created_from, created_to)
        conditions.insert(0, MISSING_ENRICHMENT_CONDITION)
        query = f"""
        SELECT id FROM {TABLE_NAME}
        {_where(conditions)}
        ORDER BY created_at, id
        {_limit(limit, params)}
        """
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(query, params)
                return [row[0] for row in cur.fetchall()]

    def records_missing_categorization(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> list[ConversationRecord]:
        """Enriched records (transcript present) whose topics were never written."""
        conditions, params = _window_clause(created_from, created_to)
        conditions[:0] = ["transcript IS NOT NULL", "main_topics IS NULL"]
        query = f"""
        SELECT {', '.join(SELECT_COLUMNS)} FROM {TABLE_NAME}
        {_where(conditions)}
        ORDER BY created_at, id
        {_limit(limit, params)}
        """
        return self._fetch_records(query, params)

    def iter_by_created_at(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
        page_size: int = 500,
    ) -> Iterator[ConversationRecord]:
        """Yield records in created_at order, paging with a (created_at, id) keyset."""
        after: Optional[tuple[datetime, str]] = None
        while True:
            conditions, params = _window_clause(created_from, created_to)
            if after is not None:
                conditions.append("(created_at, id) > (%s, %s)")
                params.extend(after)
            query = f"""
            SELECT {', '.join(SELECT_COLUMNS)} FROM {TABLE_NAME}
            {_where(conditions)}
            ORDER BY created_at, id
            {_limit(page_size, params)}
            """
            page = self._fetch_records(query, params)
            yield from page
            if len(page) < page_size:
                return
            after = (page[-1].created_at, page[-1].id)

    def count(
        self,
        created_from: Optional[datetime] = None,
        created_to: Optional[datetime] = None,
    ) -> int:
        conditions, params = _window_clause(created_from, created_to)
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.execute(f"SELECT COUNT(*) FROM {TABLE_NAME} {_where(conditions)}", params)
                return cur.fetchone()[0]
