"""
Topic sync pipeline.

Orchestrates: Intercom search -> store ids -> fetch + categorize -> patch records

Phase 1 (harvest) writes minimal rows page by page so the set of known ids
survives anything that goes wrong in phase 2. Phase 2 (enrich) reads back the
ids in the window that still need enrichment and runs the batch enricher over
them.

Also provides the two re-run modes:
- enrich-missing: phase 2 over every stored record missing enrichment
- analyze-only: categorize stored transcripts whose topics are still unset
"""

import asyncio
import logging
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Awaitable, Callable, Optional

import psycopg2

from .backoff import BackoffStrategy
from .cancellation import CancellationToken
from .categorizer import Categorizer, create_openai_client
from .config import SyncSettings
from .db.connection import connection_factory
from .db.conversation_store import ConversationStore
from .db.models import SyncRunSummary
from .enricher import BatchEnricher, RunSummary
from .harvester import HarvestError, IdHarvester
from .intercom_client import IntercomClient
from .taxonomy import TopicMappingCache, load_taxonomy, mapping_from_taxonomy

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _parse_date(value) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value))
    except ValueError:
        raise ValueError(f"Invalid date {value!r}, expected YYYY-MM-DD")


def _day_bounds(start_day: date, end_day: date) -> tuple[datetime, datetime]:
    start = datetime.combine(start_day, time.min, tzinfo=timezone.utc)
    end = datetime.combine(end_day, time(23, 59, 59), tzinfo=timezone.utc)
    return start, end


def resolve_window(
    date_value=None,
    days: Optional[int] = None,
    date_from=None,
    date_to=None,
    today: Optional[date] = None,
) -> tuple[datetime, datetime]:
    """Turn CLI-style date options into an inclusive UTC window.

    - date_value: that whole day
    - days: the last N calendar days, today included
    - date_from/date_to: whole days from one to the other
    - nothing: today

    Raises:
        ValueError: on conflicting, incomplete or malformed options
    """
    today = today or datetime.now(timezone.utc).date()
    given = sum(x is not None for x in (date_value, days)) + (date_from is not None or date_to is not None)
    if given > 1:
        raise ValueError("Use only one of --date, --days or --from/--to")

    if date_value is not None:
        day = _parse_date(date_value)
        return _day_bounds(day, day)

    if days is not None:
        if days < 1:
            raise ValueError("--days must be at least 1")
        return _day_bounds(today - timedelta(days=days - 1), today)

    if date_from is not None or date_to is not None:
        if date_from is None or date_to is None:
            raise ValueError("--from and --to must be given together")
        start_day, end_day = _parse_date(date_from), _parse_date(date_to)
        if end_day < start_day:
            raise ValueError(f"--to ({end_day}) is before --from ({start_day})")
        return _day_bounds(start_day, end_day)

    return _day_bounds(today, today)


def build_store(settings: SyncSettings) -> ConversationStore:
    return ConversationStore(connection_factory(settings.database_url), chunk_size=settings.chunk_size)


def build_categorizer(settings: SyncSettings) -> Categorizer:
    """Categorizer with a TTL'd topic mapping read from the taxonomy file."""
    taxonomy_path = Path(settings.taxonomy_file) if settings.taxonomy_file else None
    taxonomy = load_taxonomy(taxonomy_path)
    mapping_cache = TopicMappingCache(
        loader=lambda: mapping_from_taxonomy(load_taxonomy(taxonomy_path)),
        ttl_seconds=settings.topic_mapping_ttl,
    )
    mapping_cache.initialize()
    return Categorizer(
        create_openai_client(settings.openai_api_key),
        model=settings.openai_model,
        mapping_cache=mapping_cache,
        taxonomy=taxonomy,
    )


def build_intercom(settings: SyncSettings) -> IntercomClient:
    return IntercomClient(
        settings.intercom_token,
        connect_timeout=settings.connect_timeout,
        read_timeout=settings.read_timeout,
    )


def build_backoff(settings: SyncSettings) -> BackoffStrategy:
    return BackoffStrategy(
        base_delay=settings.base_delay,
        max_delay=settings.max_delay,
        max_saturated_retries=settings.max_saturated_retries,
    )


def _apply_run_summary(report: SyncRunSummary, run: RunSummary) -> None:
    report.total = run.total
    report.processed = run.processed
    report.enriched = run.enriched
    report.errors = run.errors
    report.parse_failures = run.parse_failures
    report.rate_limit_retries += run.rate_limit_retries
    report.error_ids = list(run.error_ids)
    if run.last_error:
        report.last_error = run.last_error
    if run.stopped_early:
        report.status = "stopped"


def _progress_updater(report: SyncRunSummary, on_progress: Optional[Callable[[SyncRunSummary], None]]):
    if on_progress is None:
        return None

    def update(run: RunSummary) -> None:
        _apply_run_summary(report, run)
        on_progress(report)

    return update


def _finish(report: SyncRunSummary) -> SyncRunSummary:
    if report.status == "running":
        report.status = "completed"
    report.completed_at = datetime.now(timezone.utc)
    log_summary(report)
    return report


def _fail(report: SyncRunSummary, error: Exception) -> SyncRunSummary:
    logger.error(f"Database error, aborting run: {error}")
    report.status = "failed"
    report.last_error = f"database: {error}"
    return _finish(report)


def log_summary(report: SyncRunSummary) -> None:
    logger.info("=" * 60)
    logger.info(f"Run {report.status} ({report.mode})")
    if report.mode == "sync":
        logger.info(f"  Harvested:  {report.harvested} ({report.inserted} new)")
    logger.info(f"  Total:      {report.total}")
    logger.info(f"  Processed:  {report.processed}")
    logger.info(f"  Succeeded:  {report.enriched}")
    logger.info(f"  Errored:    {report.errors}")
    if report.parse_failures:
        logger.info(f"  Unparsed:   {report.parse_failures}")
    if report.last_error:
        logger.info(f"  Last error: {report.last_error}")
    logger.info("=" * 60)


async def run_sync(
    settings: SyncSettings,
    date_from: datetime,
    date_to: datetime,
    limit: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
    store: Optional[ConversationStore] = None,
    intercom: Optional[IntercomClient] = None,
    categorizer: Optional[Categorizer] = None,
    sleep: Sleep = asyncio.sleep,
    on_progress: Optional[Callable[[SyncRunSummary], None]] = None,
) -> SyncRunSummary:
    """Harvest ids created in [date_from, date_to], then enrich the ones that need it.

    A harvest failure is recorded and phase 2 still runs over whatever was
    stored, so a partial harvest isn't wasted.
    """
    cancel_token = cancel_token or CancellationToken()
    report = SyncRunSummary(
        mode="sync", date_from=date_from, date_to=date_to, started_at=datetime.now(timezone.utc)
    )
    store = store or build_store(settings)
    owns_client = intercom is None
    intercom = intercom or build_intercom(settings)
    backoff = build_backoff(settings)

    logger.info("=" * 60)
    logger.info(f"Topic sync: {date_from.isoformat()} to {date_to.isoformat()}")
    logger.info(f"Limit: {limit or 'none'} | batch size: {settings.batch_size}")
    logger.info("=" * 60)

    try:
        # Phase 1: harvest ids
        harvester = IdHarvester(intercom, per_page=settings.per_page, backoff=backoff, sleep=sleep)
        try:
            async for page in harvester.harvest(date_from, date_to, cancel_token):
                report.inserted += store.insert_harvested(page.items)
                report.harvested += len(page.items)
                if on_progress is not None:
                    on_progress(report)
        except HarvestError as e:
            logger.error(f"Harvest failed after {e.pages_fetched} pages: {e}")
            report.last_error = f"harvest: {e}"
        logger.info(f"Phase 1 done: {report.harvested} ids seen, {report.inserted} new")

        if cancel_token.cancelled:
            report.status = "stopped"
            return _finish(report)

        # Phase 2: enrich what's missing in the window
        ids = store.ids_missing_enrichment(created_from=date_from, created_to=date_to, limit=limit)
        logger.info(f"Phase 2: {len(ids)} conversations need enrichment")

        enricher = BatchEnricher(
            intercom,
            categorizer or build_categorizer(settings),
            store,
            backoff=backoff,
            batch_size=settings.batch_size,
            batch_pause=settings.batch_pause,
            sleep=sleep,
        )
        run = await enricher.enrich(ids, cancel_token, on_progress=_progress_updater(report, on_progress))
        _apply_run_summary(report, run)
        return _finish(report)
    except psycopg2.Error as e:
        return _fail(report, e)
    finally:
        if owns_client:
            await intercom.close()


async def run_enrich_missing(
    settings: SyncSettings,
    limit: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
    store: Optional[ConversationStore] = None,
    intercom: Optional[IntercomClient] = None,
    categorizer: Optional[Categorizer] = None,
    sleep: Sleep = asyncio.sleep,
    on_progress: Optional[Callable[[SyncRunSummary], None]] = None,
) -> SyncRunSummary:
    """Run phase 2 over every stored record still missing enrichment."""
    report = SyncRunSummary(mode="enrich_missing", started_at=datetime.now(timezone.utc))
    store = store or build_store(settings)
    owns_client = intercom is None
    intercom = intercom or build_intercom(settings)

    try:
        ids = store.ids_missing_enrichment(limit=limit)
        logger.info(f"Enrich-missing: {len(ids)} stored conversations need enrichment")
        enricher = BatchEnricher(
            intercom,
            categorizer or build_categorizer(settings),
            store,
            backoff=build_backoff(settings),
            batch_size=settings.batch_size,
            batch_pause=settings.batch_pause,
            sleep=sleep,
        )
        run = await enricher.enrich(ids, cancel_token, on_progress=_progress_updater(report, on_progress))
        _apply_run_summary(report, run)
        return _finish(report)
    except psycopg2.Error as e:
        return _fail(report, e)
    finally:
        if owns_client:
            await intercom.close()


async def run_analyze_only(
    settings: SyncSettings,
    limit: Optional[int] = None,
    cancel_token: Optional[CancellationToken] = None,
    store: Optional[ConversationStore] = None,
    categorizer: Optional[Categorizer] = None,
    sleep: Sleep = asyncio.sleep,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    on_progress: Optional[Callable[[SyncRunSummary], None]] = None,
) -> SyncRunSummary:
    """Categorize stored transcripts whose topics were never written. No Intercom calls."""
    report = SyncRunSummary(
        mode="analyze_only", date_from=date_from, date_to=date_to, started_at=datetime.now(timezone.utc)
    )
    store = store or build_store(settings)

    try:
        records = store.records_missing_categorization(created_from=date_from, created_to=date_to, limit=limit)
    except psycopg2.Error as e:
        return _fail(report, e)
    logger.info(f"Analyze-only: {len(records)} records need categorization")

    enricher = BatchEnricher(
        None,
        categorizer or build_categorizer(settings),
        store,
        backoff=build_backoff(settings),
        batch_size=settings.batch_size,
        batch_pause=settings.batch_pause,
        sleep=sleep,
    )
    run = await enricher.analyze(records, cancel_token, on_progress=_progress_updater(report, on_progress))
    _apply_run_summary(report, run)
    return _finish(report)
