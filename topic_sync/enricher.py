"""
Batch enricher: fetches, categorizes and persists conversations in batches.

Items in a batch run concurrently; batches run one after another. If any
item in a batch hits a rate limit the whole batch is thrown away and retried
after a backoff delay, so a batch is only ever committed as a unit. Results
are written by the coordinating task after the batch has joined.

Per item (enrich mode):
1. GET the conversation
2. Extract transcript, product, channel
3. GET the contact for country/region (best effort)
4. Categorize the transcript

Analyze mode skips 1-3 and categorizes stored transcripts.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Literal, Optional, Sequence

import psycopg2

from .api_client import Failure, RateLimited, Success
from .backoff import BackoffStrategy
from .cancellation import CancellationToken
from .categorizer import (
    CategorizationOk,
    CategorizationOutcome,
    CategorizationParseFailed,
    CategorizationResult,
    Categorizer,
)
from .db.conversation_store import ConversationStore, RecordNotFoundError
from .db.models import ConversationRecord, EnrichmentPatch
from .intercom_client import IntercomClient, channel_for, contact_id_for, location_from_contact, product_for
from .transcript import extract_transcript

logger = logging.getLogger(__name__)

RunStatus = Literal["completed", "stopped"]


class RateLimitExhaustedError(Exception):
    """A batch stayed rate limited through every retry at the maximum delay."""

    def __init__(self, retries: int, max_delay: float):
        super().__init__(f"rate limit retries exhausted ({retries} retries at {max_delay:.0f}s)")
        self.retries = retries
        self.max_delay = max_delay


@dataclass
class ItemOutcome:
    """What happened to one item in one batch attempt."""

    conversation_id: str
    patch: Optional[EnrichmentPatch] = None
    rate_limited: bool = False
    retry_after: Optional[float] = None
    error: Optional[str] = None
    parse_failed: bool = False


def _format_duration(seconds: float) -> str:
    seconds = int(max(0, seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, secs = divmod(seconds, 60)
    if minutes < 60:
        return f"{minutes}m {secs:02d}s"
    hours, minutes = divmod(minutes, 60)
    return f"{hours}h {minutes:02d}m"


@dataclass
class RunSummary:
    """Counters for one enrich/analyze run. Mutated only by the coordinator."""

    total: int
    status: RunStatus = "completed"
    processed: int = 0
    enriched: int = 0
    errors: int = 0
    parse_failures: int = 0
    rate_limit_retries: int = 0
    last_error: Optional[str] = None
    error_ids: list[str] = field(default_factory=list)
    started_at: float = field(default_factory=time.monotonic)
    elapsed_seconds: float = 0.0

    def record_error(self, conversation_id: str, message: str) -> None:
        self.errors += 1
        self.last_error = f"{conversation_id}: {message}"
        self.error_ids.append(conversation_id)

    def eta_seconds(self, now: Optional[float] = None) -> Optional[float]:
        """Remaining time at the current throughput, or None before the first batch."""
        elapsed = (now if now is not None else time.monotonic()) - self.started_at
        if self.processed == 0 or elapsed <= 0:
            return None
        rate = self.processed / elapsed
        return (self.total - self.processed) / rate

    def progress_line(self, now: Optional[float] = None) -> str:
        eta = self.eta_seconds(now)
        eta_text = _format_duration(eta) if eta is not None else "unknown"
        return (
            f"Progress: {self.processed}/{self.total} processed, {self.enriched} enriched, "
            f"{self.errors} errors, ETA {eta_text}"
        )

    @property
    def stopped_early(self) -> bool:
        return self.status == "stopped"

    def status_line(self) -> str:
        state = "stopped early" if self.stopped_early else "completed"
        line = (
            f"Run {state}: {self.total} total, {self.processed} processed, "
            f"{self.enriched} succeeded, {self.errors} errored"
        )
        if self.last_error:
            line += f" (last error: {self.last_error})"
        return line


class BatchEnricher:
    """Runs enrichment or analysis over a list of items in fixed-size batches."""

    def __init__(
        self,
        intercom: Optional[IntercomClient],
        categorizer: Categorizer,
        store: ConversationStore,
        backoff: Optional[BackoffStrategy] = None,
        batch_size: int = 5,
        batch_pause: float = 0.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.intercom = intercom
        self.categorizer = categorizer
        self.store = store
        self.backoff = backoff or BackoffStrategy()
        self.batch_size = batch_size
        self.batch_pause = batch_pause
        self._sleep = sleep

    # Public entry points

    async def enrich(
        self,
        ids: Iterable[str],
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[RunSummary], None]] = None,
    ) -> RunSummary:
        """Fetch, categorize and patch each conversation id."""
        if self.intercom is None:
            raise ValueError("enrich() needs an IntercomClient")
        id_list = [str(i) for i in ids]
        return await self._run_batches(id_list, lambda cid: cid, self._enrich_item, cancel_token, on_progress)

    async def analyze(
        self,
        records: Iterable[ConversationRecord],
        cancel_token: Optional[CancellationToken] = None,
        on_progress: Optional[Callable[[RunSummary], None]] = None,
    ) -> RunSummary:
        """Categorize already-enriched records from their stored transcripts."""
        return await self._run_batches(
            list(records), lambda record: record.id, self._analyze_item, cancel_token, on_progress
        )

    # Coordinator

    async def _run_batches(
        self,
        items: Sequence,
        id_of: Callable,
        worker: Callable[..., Awaitable[ItemOutcome]],
        cancel_token: Optional[CancellationToken],
        on_progress: Optional[Callable[[RunSummary], None]],
    ) -> RunSummary:
        summary = RunSummary(total=len(items))
        batches = [items[i:i + self.batch_size] for i in range(0, len(items), self.batch_size)]
        logger.info(f"Processing {len(items)} items in {len(batches)} batches of up to {self.batch_size}")

        for batch_num, batch in enumerate(batches, 1):
            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Stop requested, halting before batch {batch_num}/{len(batches)}")
                summary.status = "stopped"
                break

            outcomes = await self._run_batch_with_retries(batch, batch_num, id_of, worker, summary, cancel_token)
            if outcomes is None:
                summary.status = "stopped"
                break

            self._commit(outcomes, summary)
            logger.info(f"Batch {batch_num}/{len(batches)} done. {summary.progress_line()}")
            if on_progress is not None:
                on_progress(summary)

            if self.batch_pause > 0 and batch_num < len(batches):
                await self._sleep(self.batch_pause)

        summary.elapsed_seconds = time.monotonic() - summary.started_at
        return summary

    async def _run_batch_with_retries(
        self,
        batch: Sequence,
        batch_num: int,
        id_of: Callable,
        worker: Callable[..., Awaitable[ItemOutcome]],
        summary: RunSummary,
        cancel_token: Optional[CancellationToken],
    ) -> Optional[list[ItemOutcome]]:
        """Run a batch until no item is rate limited.

        Returns the outcomes to commit, or None if a stop was requested while
        waiting to retry (nothing from the batch is committed in that case).
        """
        while True:
            results = await asyncio.gather(*(worker(item) for item in batch), return_exceptions=True)

            outcomes = []
            for item, result in zip(batch, results):
                if isinstance(result, Exception):
                    logger.error(f"Unexpected error processing {id_of(item)}: {result}")
                    result = ItemOutcome(conversation_id=id_of(item), error=f"{type(result).__name__}: {result}")
                outcomes.append(result)

            limited = sum(1 for o in outcomes if o.rate_limited)
            if not limited:
                self.backoff.reset()
                return outcomes

            delay = self.backoff.next_delay()
            summary.rate_limit_retries += 1

            if self.backoff.exhausted:
                error = RateLimitExhaustedError(self.backoff.max_saturated_retries, self.backoff.max_delay)
                logger.error(f"Batch {batch_num}: {error}, giving up on {len(batch)} items")
                self.backoff.clear_saturation()
                return [ItemOutcome(conversation_id=id_of(item), error=str(error)) for item in batch]

            hints = [o.retry_after for o in outcomes if o.rate_limited and o.retry_after]
            if hints:
                delay = max(delay, max(hints))

            logger.warning(
                f"Batch {batch_num}: {limited}/{len(batch)} items rate limited, "
                f"retrying whole batch in {delay:.1f}s"
            )
            await self._sleep(delay)

            if cancel_token is not None and cancel_token.cancelled:
                logger.info(f"Stop requested while batch {batch_num} was backing off")
                return None

    def _commit(self, outcomes: list[ItemOutcome], summary: RunSummary) -> None:
        """Write patches one at a time and update counters."""
        for outcome in outcomes:
            summary.processed += 1

            if outcome.patch is not None:
                try:
                    self.store.patch_enrichment(outcome.conversation_id, outcome.patch)
                except (RecordNotFoundError, psycopg2.Error) as e:
                    logger.error(f"Failed to store {outcome.conversation_id}: {e}")
                    summary.record_error(outcome.conversation_id, f"store write failed: {e}")
                    continue

            if outcome.parse_failed:
                summary.parse_failures += 1

            if outcome.error:
                logger.warning(f"Error on {outcome.conversation_id}: {outcome.error}")
                summary.record_error(outcome.conversation_id, outcome.error)
            elif outcome.patch is not None:
                summary.enriched += 1

    # Workers

    async def _enrich_item(self, conversation_id: str) -> ItemOutcome:
        detail = await self.intercom.get_conversation(conversation_id)
        if isinstance(detail, RateLimited):
            return ItemOutcome(conversation_id, rate_limited=True, retry_after=detail.retry_after)
        if isinstance(detail, Failure):
            return ItemOutcome(conversation_id, error=detail.message)

        conversation = detail.payload or {}
        transcript = extract_transcript(conversation)
        fields = {
            "product": product_for(conversation),
            "channel": channel_for(conversation),
            "transcript": transcript,
        }

        contact_id = contact_id_for(conversation)
        if contact_id:
            contact = await self.intercom.get_contact(contact_id)
            if isinstance(contact, RateLimited):
                return ItemOutcome(conversation_id, rate_limited=True, retry_after=contact.retry_after)
            if isinstance(contact, Success):
                fields["country"], fields["region"] = location_from_contact(contact.payload)
            else:
                logger.debug(f"Contact {contact_id} lookup failed for {conversation_id}: {contact.message}")

        categorization = await self.categorizer.categorize(transcript)
        return self._with_categorization(conversation_id, fields, categorization)

    async def _analyze_item(self, record: ConversationRecord) -> ItemOutcome:
        categorization = await self.categorizer.categorize(record.transcript or "")
        return self._with_categorization(record.id, {}, categorization)

    @staticmethod
    def _with_categorization(
        conversation_id: str, fields: dict, categorization: CategorizationOutcome
    ) -> ItemOutcome:
        if isinstance(categorization, RateLimited):
            return ItemOutcome(conversation_id, rate_limited=True, retry_after=categorization.retry_after)

        if isinstance(categorization, CategorizationOk):
            return ItemOutcome(conversation_id, patch=EnrichmentPatch(**fields, **_result_columns(categorization.result)))

        if isinstance(categorization, CategorizationParseFailed):
            # Keep the enrichment fields; topics stay NULL so analyze-only picks it up later
            return ItemOutcome(conversation_id, patch=_patch_or_none(fields), parse_failed=True)

        return ItemOutcome(conversation_id, patch=_patch_or_none(fields), error=categorization.message)


def _patch_or_none(fields: dict) -> Optional[EnrichmentPatch]:
    return EnrichmentPatch(**fields) if fields else None


def _result_columns(result: CategorizationResult) -> dict:
    return {
        "main_topics": result.main_topics,
        "sub_topics": result.sub_topics,
        "sentiment_start": result.sentiment_start,
        "sentiment_end": result.sentiment_end,
        "resolution_outcome": result.resolution_outcome,
        "feedbacks": result.feedbacks,
    }
