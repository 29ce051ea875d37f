"""
AI categorization of support transcripts.

Sends the transcript with the categorization prompt to an OpenAI chat model
and decodes its JSON answer:

    {
      "Main Category": ["Payout & Profit-Share"],
      "Sub category": ["Payout Delay Issue"],
      "Customer sentiment": {"beginning": "Negative", "end": "Neutral"},
      "Resolution outcome": "Pending",
      "Suggestions & feedback": ["Faster payout processing"]
    }

Decoding never raises: anything unparseable comes back as
CategorizationParseFailed carrying the raw text and an "unavailable" result.
"""

import json
import logging
import re
from dataclasses import dataclass
from typing import Optional, Union

from openai import AsyncOpenAI
from pydantic import BaseModel, Field

from .api_client import Failure, RateLimited, Success, call_chat_completion
from .config import ConfigError, DEFAULT_OPENAI_MODEL
from .db.models import Sentiment
from .taxonomy import UNDEFINED_TOPIC, Taxonomy, TopicMappingCache, load_taxonomy, render_taxonomy

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = "You are a support ticket categorization AI. Always respond with valid JSON only."

CATEGORIZATION_PROMPT_TEMPLATE = """# Support Conversation Categorization

**Input:** Intercom support chat transcript provided below.

## Task
Read the entire conversation (user + agent). Identify the client's main frustration topics from the actual discussion, not from button clicks.

## Output Format (JSON STRICT)
```json
{{
  "Main Category": ["<category>"],
  "Sub category": ["<sub-category>"],
  "Customer sentiment": {{
    "beginning": "<sentiment>",
    "end": "<sentiment>"
  }},
  "Resolution outcome": "<Yes/No/Pending>",
  "Suggestions & feedback": ["<suggestion 1>", "<suggestion 2>"]
}}
```

**Rules:**
- Default: ONE main + ONE sub-category
- Multi-topic: 2-5 categories if equally dominant
- Exact spelling/casing from taxonomy
- If no match: `"{undefined_topic}"`

**Sentiment values ONLY:**
- "Very Negative" | "Negative" | "Neutral" | "Positive" | "Very Positive"

**Resolution outcome (was it in the client's favor?):**
- **"Yes"** - issue resolved in the client's favor
- **"No"** - issue NOT resolved in the client's favor
- **"Pending"** - no resolution yet

## Transcript Structure
One message per line, prefixed with `USER:` or `AGENT:`.

**Ignore preset buttons** (first 1-4 user messages if <5 words or matching):
Free Trial, Challenge Account, FundedNext Account, Stellar Instant, Account Models, KYC, IP Rule, Restricted Strategies, News Rule, Trading Info, Restricted Countries, Trading Related Issues, Payment Related Issues, Platform/Account Model Switch Request, Account Pause/Unpause, Payout Related Issues, Dashboard Related Issue, Account Related Services, General Queries, CFD / Forex, Futures, Start over, Connect to an agent.

## Topic Taxonomy

{taxonomy}

---

Now analyze this transcript:
"""

MODEL_TEMPERATURE = 0
MODEL_MAX_TOKENS = 1000

_FENCE_OPEN_RE = re.compile(r"^```(?:json)?\s*", re.IGNORECASE)
_FENCE_CLOSE_RE = re.compile(r"\s*```$")

_SENTIMENT_ALIASES = {
    "very positive": "Positive",
    "positive": "Positive",
    "neutral": "Neutral",
    "negative": "Negative",
    "very negative": "Negative",
}

_RESOLUTION_ALIASES = {"yes": "Yes", "no": "No", "pending": "Pending"}


class CategorizationResult(BaseModel):
    """Decoded categorization for one conversation."""

    main_topics: list[str] = Field(default_factory=list, description="Main categories, in model order")
    sub_topics: list[str] = Field(default_factory=list, description="Sub categories, in model order")
    sentiment_start: Sentiment = "Unknown"
    sentiment_end: Sentiment = "Unknown"
    resolution_outcome: str = Field(default="Pending", description="Yes, No, Pending or free text")
    feedbacks: list[str] = Field(default_factory=list)

    @classmethod
    def unavailable(cls) -> "CategorizationResult":
        """Empty topics, Unknown sentiment, Pending outcome."""
        return cls()


@dataclass(frozen=True)
class CategorizationOk:
    result: CategorizationResult


@dataclass(frozen=True)
class CategorizationParseFailed:
    raw_text: str
    error: str = ""

    @property
    def result(self) -> CategorizationResult:
        return CategorizationResult.unavailable()


CategorizationOutcome = Union[CategorizationOk, CategorizationParseFailed, RateLimited, Failure]


def build_categorization_prompt(taxonomy: Optional[Taxonomy] = None) -> str:
    return CATEGORIZATION_PROMPT_TEMPLATE.format(
        taxonomy=render_taxonomy(taxonomy if taxonomy is not None else load_taxonomy()),
        undefined_topic=UNDEFINED_TOPIC,
    )


def strip_code_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` (or bare ```) fence."""
    stripped = text.strip()
    if stripped.startswith("```"):
        stripped = _FENCE_OPEN_RE.sub("", stripped, count=1)
        stripped = _FENCE_CLOSE_RE.sub("", stripped)
    return stripped.strip()


def _as_list(value, split_pipes: bool = False) -> list[str]:
    if value is None:
        return []
    if isinstance(value, str):
        items = value.split("|") if split_pipes else [value]
    elif isinstance(value, list):
        items = value
    else:
        items = [value]

    cleaned = []
    for item in items:
        if item is None or isinstance(item, (dict, list)):
            continue
        text = str(item).strip()
        if text and text not in cleaned:
            cleaned.append(text)
    return cleaned


def normalize_topics(value) -> list[str]:
    """List of labels with duplicates and "Undefined Topic" removed."""
    return [t for t in _as_list(value, split_pipes=True) if t.casefold() != UNDEFINED_TOPIC.casefold()]


def normalize_sentiment(value) -> str:
    if not isinstance(value, str):
        return "Unknown"
    return _SENTIMENT_ALIASES.get(value.strip().casefold(), "Unknown")


def normalize_resolution(value) -> str:
    if isinstance(value, bool):
        return "Yes" if value else "No"
    if value is None or not str(value).strip():
        return "Pending"
    text = str(value).strip()
    return _RESOLUTION_ALIASES.get(text.casefold(), text)


def _backfill_main_topics(result: CategorizationResult, mapping: TopicMappingCache) -> None:
    for sub_topic in result.sub_topics:
        try:
            main_topic = mapping.main_topic_for(sub_topic)
        except ConfigError as e:
            logger.warning(f"Topic mapping unavailable, skipping main topic backfill: {e}")
            return
        if main_topic and main_topic not in result.main_topics:
            result.main_topics.append(main_topic)


def parse_categorization(
    text: Optional[str], mapping: Optional[TopicMappingCache] = None
) -> Union[CategorizationOk, CategorizationParseFailed]:
    """Decode the model's answer. Never raises."""
    raw = text or ""
    try:
        data = json.loads(strip_code_fences(raw))
    except json.JSONDecodeError as e:
        return CategorizationParseFailed(raw_text=raw, error=f"Invalid JSON: {e}")

    if not isinstance(data, dict):
        return CategorizationParseFailed(raw_text=raw, error=f"Expected a JSON object, got {type(data).__name__}")

    sentiment = data.get("Customer sentiment")
    if not isinstance(sentiment, dict):
        sentiment = {}

    result = CategorizationResult(
        main_topics=normalize_topics(data.get("Main Category")),
        sub_topics=normalize_topics(data.get("Sub category")),
        sentiment_start=normalize_sentiment(sentiment.get("beginning")),
        sentiment_end=normalize_sentiment(sentiment.get("end")),
        resolution_outcome=normalize_resolution(data.get("Resolution outcome")),
        feedbacks=_as_list(data.get("Suggestions & feedback")),
    )

    if mapping is not None:
        _backfill_main_topics(result, mapping)

    return CategorizationOk(result)


def create_openai_client(api_key: str) -> AsyncOpenAI:
    """AsyncOpenAI client with SDK retries off; the enricher owns retrying."""
    return AsyncOpenAI(api_key=api_key, max_retries=0)


class Categorizer:
    """Categorizes transcripts with a chat model."""

    def __init__(
        self,
        client: AsyncOpenAI,
        model: str = DEFAULT_OPENAI_MODEL,
        mapping_cache: Optional[TopicMappingCache] = None,
        taxonomy: Optional[Taxonomy] = None,
    ):
        self.client = client
        self.model = model
        self.mapping_cache = mapping_cache
        self.prompt = build_categorization_prompt(taxonomy)

    def build_messages(self, transcript: str) -> list[dict]:
        return [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": self.prompt + "\n\n" + transcript},
        ]

    async def categorize(self, transcript: str) -> CategorizationOutcome:
        """Categorize one transcript.

        An empty transcript skips the model and comes back as an empty
        (analyzed, no match) result. Rate limits and transport failures
        are returned as-is for the caller to handle.
        """
        if not transcript or not transcript.strip():
            return CategorizationOk(CategorizationResult.unavailable())

        response = await call_chat_completion(
            self.client,
            self.model,
            self.build_messages(transcript),
            temperature=MODEL_TEMPERATURE,
            max_tokens=MODEL_MAX_TOKENS,
        )
        if not isinstance(response, Success):
            return response

        outcome = parse_categorization(response.payload, self.mapping_cache)
        if isinstance(outcome, CategorizationParseFailed):
            logger.warning(f"Could not parse categorization ({outcome.error}): {outcome.raw_text[:200]!r}")
        return outcome
