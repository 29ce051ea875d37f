"""
Pipeline Tests

End-to-end runs of the sync, enrich-missing and analyze-only modes against
the in-memory store with Intercom and the categorizer mocked.
"""

from datetime import date, datetime, timezone
from unittest.mock import AsyncMock, Mock

import psycopg2
import pytest

from conftest import make_conversation
from topic_sync.api_client import Failure, Success
from topic_sync.cancellation import CancellationToken
from topic_sync.categorizer import CategorizationOk, CategorizationResult
from topic_sync.config import SyncSettings
from topic_sync.db.models import ConversationRecord
from topic_sync.pipeline import resolve_window, run_analyze_only, run_enrich_missing, run_sync

DAY_START = datetime(2025, 11, 27, 0, 0, 0, tzinfo=timezone.utc)
DAY_END = datetime(2025, 11, 27, 23, 59, 59, tzinfo=timezone.utc)
IN_WINDOW = 1764201600  # 2025-11-27T00:00:00Z

RESULT = CategorizationResult(
    main_topics=["KYC & Verification"],
    sub_topics=["Underage"],
    sentiment_start="Neutral",
    sentiment_end="Positive",
    resolution_outcome="Yes",
    feedbacks=[],
)


def search_page(ids, next_cursor=None):
    return Success({
        "conversations": [{"id": cid, "created_at": IN_WINDOW + 60} for cid in ids],
        "total_count": None,
        "pages": {"next": {"starting_after": next_cursor}} if next_cursor else {},
    })


def make_intercom(search_results):
    intercom = Mock()
    intercom.search_conversations = AsyncMock(side_effect=search_results)
    intercom.get_conversation = AsyncMock(side_effect=lambda cid: Success(make_conversation(cid)))
    intercom.get_contact = AsyncMock(
        return_value=Success({"location": {"country": "Kenya", "region": "Nairobi"}})
    )
    intercom.close = AsyncMock()
    return intercom


@pytest.fixture
def categorizer():
    categorizer = Mock()
    categorizer.categorize = AsyncMock(return_value=CategorizationOk(RESULT))
    return categorizer


@pytest.fixture
def settings():
    return SyncSettings(intercom_token="t", openai_api_key="k", batch_size=2)


def fetched_ids(intercom):
    return [c.args[0] for c in intercom.get_conversation.await_args_list]


class TestResolveWindow:
    TODAY = date(2025, 11, 27)

    def test_single_date(self):
        assert resolve_window("2025-11-27") == (DAY_START, DAY_END)

    def test_default_is_today(self):
        assert resolve_window(today=self.TODAY) == (DAY_START, DAY_END)

    def test_days_includes_today(self):
        start, end = resolve_window(days=3, today=self.TODAY)

        assert start == datetime(2025, 11, 25, tzinfo=timezone.utc)
        assert end == DAY_END

    def test_range(self):
        start, end = resolve_window(date_from="2025-11-01", date_to="2025-11-27")

        assert start == datetime(2025, 11, 1, tzinfo=timezone.utc)
        assert end == DAY_END

    @pytest.mark.parametrize("kwargs", [
        {"date_value": "2025-11-27", "days": 2},
        {"date_from": "2025-11-27"},
        {"date_from": "2025-11-27", "date_to": "2025-11-01"},
        {"date_value": "27/11/2025"},
        {"days": 0},
    ])
    def test_invalid_options(self, kwargs):
        with pytest.raises(ValueError):
            resolve_window(**kwargs)


class TestRunSync:
    @pytest.mark.asyncio
    async def test_harvests_then_enriches(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1", "2"], "c1"), search_page(["3"])])

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.status == "completed"
        assert report.succeeded
        assert (report.harvested, report.inserted) == (3, 3)
        assert (report.total, report.enriched, report.errors) == (3, 3, 0)
        record = memory_store.get("3")
        assert record.region == "Nairobi"
        assert record.main_topics == ["KYC & Verification"]
        assert report.completed_at is not None
        # Caller-owned client stays open
        intercom.close.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_rerun_only_enriches_missing(self, settings, categorizer, memory_store, fake_sleep):
        memory_store.records["1"] = ConversationRecord(
            id="1",
            created_at=DAY_START,
            transcript="USER: hi",
            product="hi",
            region="Nairobi",
            sentiment_start="Neutral",
        )
        intercom = make_intercom([search_page(["1", "2"])])

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert (report.harvested, report.inserted) == (2, 1)
        assert fetched_ids(intercom) == ["2"]
        assert memory_store.get("1").transcript == "USER: hi"

    @pytest.mark.asyncio
    async def test_limit_caps_phase_two(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1", "2", "3"])])

        report = await run_sync(
            settings, DAY_START, DAY_END, limit=1,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.inserted == 3
        assert report.total == 1
        assert fetched_ids(intercom) == ["1"]

    @pytest.mark.asyncio
    async def test_harvest_error_still_enriches_stored_ids(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1"], "c1"), Failure(500, "search down")])

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.harvested == 1
        assert report.enriched == 1
        assert report.last_error.startswith("harvest:")
        assert not report.succeeded

    @pytest.mark.asyncio
    async def test_stop_during_harvest_skips_enrichment(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1"], "c1"), search_page(["2"])])
        token = CancellationToken()

        report = await run_sync(
            settings, DAY_START, DAY_END, cancel_token=token,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
            on_progress=lambda r: token.cancel(),
        )

        assert report.status == "stopped"
        assert report.harvested == 1
        intercom.get_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_stop_during_enrichment(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1", "2", "3", "4"])])
        token = CancellationToken()

        def on_progress(report):
            if report.processed >= 2:
                token.cancel()

        report = await run_sync(
            settings, DAY_START, DAY_END, cancel_token=token,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
            on_progress=on_progress,
        )

        assert report.status == "stopped"
        assert report.processed == 2
        assert memory_store.ids_missing_enrichment() == ["3", "4"]

    @pytest.mark.asyncio
    async def test_item_errors_are_reported(self, settings, categorizer, memory_store, fake_sleep):
        intercom = make_intercom([search_page(["1", "2"])])
        intercom.get_conversation.side_effect = lambda cid: (
            Failure(404, "gone") if cid == "2" else Success(make_conversation(cid))
        )

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.status == "completed"
        assert report.errors == 1
        assert report.error_ids == ["2"]

    @pytest.mark.asyncio
    async def test_database_error_ends_run_as_failed(self, settings, categorizer, memory_store, fake_sleep):
        memory_store.insert_harvested = Mock(side_effect=psycopg2.OperationalError("connection lost"))
        intercom = make_intercom([search_page(["1"])])

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.status == "failed"
        assert report.last_error == "database: connection lost"
        assert report.completed_at is not None
        intercom.get_conversation.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_database_error_selecting_ids(self, settings, categorizer, memory_store, fake_sleep):
        memory_store.ids_missing_enrichment = Mock(side_effect=psycopg2.InterfaceError("cursor closed"))
        intercom = make_intercom([search_page(["1"])])

        report = await run_sync(
            settings, DAY_START, DAY_END,
            store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep,
        )

        assert report.status == "failed"
        assert report.harvested == 1
        assert "cursor closed" in report.last_error


class TestRunEnrichMissing:
    @pytest.mark.asyncio
    async def test_ignores_window(self, settings, categorizer, memory_store, fake_sleep):
        memory_store.records["old"] = ConversationRecord(id="old", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        memory_store.records["new"] = ConversationRecord(id="new", created_at=DAY_START)
        intercom = make_intercom([])

        report = await run_enrich_missing(
            settings, store=memory_store, intercom=intercom, categorizer=categorizer, sleep=fake_sleep
        )

        assert report.mode == "enrich_missing"
        assert fetched_ids(intercom) == ["old", "new"]
        intercom.search_conversations.assert_not_awaited()
        assert report.enriched == 2


class TestRunAnalyzeOnly:
    @pytest.mark.asyncio
    async def test_categorizes_stored_transcripts(self, settings, categorizer, memory_store, fake_sleep):
        memory_store.records["a"] = ConversationRecord(id="a", created_at=DAY_START, transcript="USER: a")
        memory_store.records["b"] = ConversationRecord(
            id="b", created_at=DAY_START, transcript="USER: b", main_topics=[]
        )
        memory_store.records["c"] = ConversationRecord(id="c", created_at=DAY_START)

        report = await run_analyze_only(settings, store=memory_store, categorizer=categorizer, sleep=fake_sleep)

        assert report.mode == "analyze_only"
        assert report.total == 1
        assert report.enriched == 1
        categorizer.categorize.assert_awaited_once_with("USER: a")
        assert memory_store.get("a").main_topics == ["KYC & Verification"]

    @pytest.mark.asyncio
    async def test_window_and_limit(self, settings, categorizer, memory_store, fake_sleep):
        for i in range(3):
            memory_store.records[str(i)] = ConversationRecord(
                id=str(i), created_at=DAY_START, transcript=f"USER: {i}"
            )
        memory_store.records["old"] = ConversationRecord(
            id="old", created_at=datetime(2024, 1, 1, tzinfo=timezone.utc), transcript="USER: old"
        )

        report = await run_analyze_only(
            settings, limit=2, store=memory_store, categorizer=categorizer, sleep=fake_sleep,
            date_from=DAY_START, date_to=DAY_END,
        )

        assert report.total == 2
        assert memory_store.get("old").main_topics is None
