"""
Topic taxonomy and the sub-topic -> main-topic mapping cache.

The taxonomy is a JSON file of the form:

    {"version": "4.5", "topics": {"KYC & Verification": ["Underage", ...], ...}}

It's embedded into the categorization prompt and also drives the mapping
used to backfill main topics the model leaves out.
"""

import json
import logging
import threading
import time
from pathlib import Path
from typing import Callable, Optional

from .config import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_TAXONOMY_PATH = Path(__file__).parent / "data" / "topic_taxonomy.json"

# Label the model returns when nothing in the taxonomy fits
UNDEFINED_TOPIC = "Undefined Topic"

Taxonomy = dict[str, list[str]]


def load_taxonomy(path: Optional[Path] = None) -> Taxonomy:
    """Read a taxonomy file.

    Raises:
        ConfigError: if the file is missing or malformed
    """
    taxonomy_path = Path(path) if path else DEFAULT_TAXONOMY_PATH
    try:
        data = json.loads(taxonomy_path.read_text(encoding="utf-8"))
    except FileNotFoundError:
        raise ConfigError(f"Topic taxonomy file not found: {taxonomy_path}")
    except json.JSONDecodeError as e:
        raise ConfigError(f"Topic taxonomy file {taxonomy_path} is not valid JSON: {e}")

    topics = data.get("topics") if isinstance(data, dict) else None
    if not isinstance(topics, dict) or not topics:
        raise ConfigError(f"Topic taxonomy file {taxonomy_path} has no 'topics' object")

    taxonomy: Taxonomy = {}
    for main_topic, sub_topics in topics.items():
        if not isinstance(sub_topics, list):
            raise ConfigError(f"Sub-topics for {main_topic!r} must be a list")
        taxonomy[main_topic.strip()] = [str(s).strip() for s in sub_topics if str(s).strip()]

    logger.debug(f"Loaded {len(taxonomy)} main topics from {taxonomy_path}")
    return taxonomy


def mapping_from_taxonomy(taxonomy: Taxonomy) -> dict[str, str]:
    """Flatten a taxonomy into {sub_topic: main_topic}. First listing wins."""
    mapping = {}
    for main_topic, sub_topics in taxonomy.items():
        for sub_topic in sub_topics:
            mapping.setdefault(sub_topic, main_topic)
    return mapping


def render_taxonomy(taxonomy: Taxonomy) -> str:
    """Render the taxonomy as prompt markdown, one heading per main topic."""
    sections = []
    for main_topic, sub_topics in taxonomy.items():
        sections.append(f"### {main_topic}\n{' | '.join(sub_topics)}")
    return "\n\n".join(sections)


class TopicMappingCache:
    """Sub-topic -> main-topic lookup, loaded lazily and refreshed after a TTL.

    The loader is any zero-arg callable returning the mapping (the default
    reads the taxonomy file). If a refresh fails the previous mapping is
    kept; if the very first load fails the error propagates.
    """

    def __init__(
        self,
        loader: Optional[Callable[[], dict[str, str]]] = None,
        ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._loader = loader or (lambda: mapping_from_taxonomy(load_taxonomy()))
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._mapping: Optional[dict[str, str]] = None
        self._folded: dict[str, str] = {}
        self._loaded_at = 0.0

    def _load(self) -> None:
        mapping = {k.strip(): v.strip() for k, v in self._loader().items() if k and v}
        self._mapping = mapping
        self._folded = {k.casefold(): v for k, v in mapping.items()}
        self._loaded_at = self._clock()
        logger.info(f"Loaded {len(mapping)} topic mappings")

    def initialize(self) -> None:
        """Load the mapping now. Raises whatever the loader raises."""
        with self._lock:
            self._load()

    def _expired(self) -> bool:
        return self._clock() - self._loaded_at >= self.ttl_seconds

    def get(self) -> dict[str, str]:
        with self._lock:
            if self._mapping is None:
                self._load()
            elif self._expired():
                try:
                    self._load()
                except Exception as e:
                    logger.warning(f"Topic mapping refresh failed, keeping previous mapping: {e}")
                    self._loaded_at = self._clock()
            return self._mapping

    def invalidate(self) -> None:
        """Force a reload on the next lookup."""
        with self._lock:
            self._loaded_at = float("-inf")

    def main_topic_for(self, sub_topic: str) -> Optional[str]:
        mapping = self.get()
        key = sub_topic.strip()
        if key in mapping:
            return mapping[key]
        return self._folded.get(key.casefold())
