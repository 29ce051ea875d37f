"""
Pytest configuration for topic sync tests.

Test Tier System:
- fast (default): Pure unit tests, all I/O mocked
- medium: API TestClient, mocked aiohttp sessions, mocked database cursors
- slow: Tests that would reach real external APIs
- integration: Needs a real PostgreSQL via TEST_DATABASE_URL (defaults to medium)

Run tiers:
- pytest                          # Fast + medium (default addopts)
- pytest -m fast                  # Fast only
- pytest -m integration           # PostgreSQL tests (skipped without TEST_DATABASE_URL)
- pytest --override-ini="addopts=" -v   # Full suite (all tiers)

Unmarked tests are auto-assigned to the 'fast' tier.

API Key Safety:
- Fast/medium tests force-set fake OPENAI_API_KEY / INTERCOM_ACCESS_TOKEN so a
  mock that fails to patch can't reach a real account.
"""

import os
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional
from unittest.mock import AsyncMock

import pytest

# Add project root to path for imports
PROJECT_ROOT = Path(__file__).parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from topic_sync.db.conversation_store import RecordNotFoundError  # noqa: E402
from topic_sync.db.models import ConversationRecord, EnrichmentPatch  # noqa: E402


# =============================================================================
# Tier Auto-Assignment
# =============================================================================

def pytest_collection_modifyitems(config, items):
    """
    Automatically assign tier markers to unmarked tests.

    Tests marked with @pytest.mark.integration (but no tier) are assigned to
    'medium'.
    """
    for item in items:
        has_tier = (
            list(item.iter_markers(name='fast')) or
            list(item.iter_markers(name='medium')) or
            list(item.iter_markers(name='slow'))
        )
        if has_tier:
            continue

        if list(item.iter_markers(name='skip')):
            continue

        if list(item.iter_markers(name='integration')):
            item.add_marker(pytest.mark.medium)
            continue

        item.add_marker(pytest.mark.fast)


# =============================================================================
# Pytest Configuration
# =============================================================================

def pytest_configure(config):
    """Force fake credentials unless slow tests were explicitly selected."""
    markexpr = getattr(config.option, 'markexpr', '') or ''
    includes_slow_tests = 'slow' in markexpr and 'not slow' not in markexpr

    if includes_slow_tests:
        os.environ.setdefault("OPENAI_API_KEY", "sk-test-fake-key-for-testing")
        os.environ.setdefault("INTERCOM_ACCESS_TOKEN", "test-intercom-token")
    else:
        os.environ["OPENAI_API_KEY"] = "sk-test-fake-key-for-testing"
        os.environ["INTERCOM_ACCESS_TOKEN"] = "test-intercom-token"


# =============================================================================
# Session-Scoped Fixtures
# =============================================================================

@pytest.fixture(scope="session")
def project_root():
    """Return project root path (session-scoped for efficiency)."""
    return PROJECT_ROOT


# =============================================================================
# In-memory store
# =============================================================================

MISSING_ENRICHMENT_FIELDS = ("transcript", "product", "region", "sentiment_start")


class InMemoryConversationStore:
    """Dict-backed stand-in for ConversationStore with the same semantics."""

    def __init__(self):
        self.records: dict[str, ConversationRecord] = {}
        self.patch_calls: list[tuple[str, EnrichmentPatch]] = []
        self.fail_ids: set[str] = set()

    def insert_harvested(self, records) -> int:
        inserted = 0
        for record in records:
            if str(record.id) not in self.records:
                self.records[str(record.id)] = ConversationRecord(id=str(record.id), created_at=record.created_at)
                inserted += 1
        return inserted

    def patch_enrichment(self, conversation_id: str, patch: EnrichmentPatch, synced_at=None) -> None:
        if conversation_id in self.fail_ids or conversation_id not in self.records:
            raise RecordNotFoundError(conversation_id)
        self.patch_calls.append((conversation_id, patch))
        current = self.records[conversation_id]
        self.records[conversation_id] = current.model_copy(
            update={**patch.to_columns(), "synced_at": synced_at or datetime.now(timezone.utc)}
        )

    def get(self, conversation_id: str) -> Optional[ConversationRecord]:
        return self.records.get(conversation_id)

    def _in_window(self, record, created_from, created_to) -> bool:
        if created_from is not None and record.created_at < created_from:
            return False
        if created_to is not None and record.created_at > created_to:
            return False
        return True

    def _ordered(self):
        return sorted(self.records.values(), key=lambda r: (r.created_at, r.id))

    def ids_missing_enrichment(self, created_from=None, created_to=None, limit=None) -> list[str]:
        ids = [
            r.id for r in self._ordered()
            if self._in_window(r, created_from, created_to)
            and any(getattr(r, f) is None for f in MISSING_ENRICHMENT_FIELDS)
        ]
        return ids[:limit] if limit is not None else ids

    def records_missing_categorization(self, created_from=None, created_to=None, limit=None):
        records = [
            r for r in self._ordered()
            if self._in_window(r, created_from, created_to)
            and r.is_enriched and not r.is_categorized
        ]
        return records[:limit] if limit is not None else records

    def count(self, created_from=None, created_to=None) -> int:
        return sum(1 for r in self.records.values() if self._in_window(r, created_from, created_to))


@pytest.fixture
def memory_store():
    """Empty in-memory conversation store."""
    return InMemoryConversationStore()


@pytest.fixture
def fake_sleep():
    """Async sleep replacement that records requested delays without waiting."""
    return AsyncMock(return_value=None)


def make_conversation(
    conversation_id: str = "1001",
    opening: str = "<p>Payout Related Issues</p>",
    parts: Optional[list] = None,
    contact_id: Optional[str] = "contact_1",
    team_assignee_id: Optional[int] = 42,
    created_at: int = 1732665600,
) -> dict:
    """Build a conversation payload shaped like GET /conversations/{id}."""
    if parts is None:
        parts = [
            {"part_type": "comment", "author": {"type": "user"}, "body": "<p>My payout is late</p>"},
            {"part_type": "comment", "author": {"type": "admin"}, "body": "<p>Let me check.</p>"},
        ]
    return {
        "id": conversation_id,
        "created_at": created_at,
        "team_assignee_id": team_assignee_id,
        "source": {"body": opening, "author": {"type": "user", "id": contact_id}},
        "contacts": {"contacts": [{"id": contact_id}] if contact_id else []},
        "conversation_parts": {"conversation_parts": parts},
    }


@pytest.fixture
def conversation_factory():
    return make_conversation
