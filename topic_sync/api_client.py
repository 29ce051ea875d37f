"""
Rate-limit aware HTTP transport.

Every outbound call (Intercom REST, OpenAI chat completions) comes back as one
of three results instead of raising:

- Success(payload)
- RateLimited(retry_after)   HTTP 429
- Failure(status_code, error_body)   any other non-2xx, or a transport error
                                     (status_code 0)

No retries happen here. Retry and backoff policy belongs to the caller
(see enricher.BatchEnricher).
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Optional, Union

import aiohttp
import openai

logger = logging.getLogger(__name__)

# Warn when the provider reports fewer remaining calls than this
RATE_LIMIT_LOW_WATERMARK = 100

# Truncate error bodies kept in results and logs
MAX_ERROR_BODY_CHARS = 1000


@dataclass(frozen=True)
class Success:
    payload: Any


@dataclass(frozen=True)
class RateLimited:
    retry_after: Optional[float] = None
    endpoint: Optional[str] = None


@dataclass(frozen=True)
class Failure:
    status_code: int
    error_body: str
    endpoint: Optional[str] = None

    @property
    def message(self) -> str:
        where = f" on {self.endpoint}" if self.endpoint else ""
        if self.status_code:
            return f"HTTP {self.status_code}{where}: {self.error_body}"
        return f"Transport error{where}: {self.error_body}"


ApiResult = Union[Success, RateLimited, Failure]


def parse_retry_after(header_value: Optional[str]) -> Optional[float]:
    """
    Parse a Retry-After header value.

    The header can be either an integer (seconds to wait) or an HTTP-date.

    Returns:
        Seconds to wait (minimum 1), or None if the header is absent/garbled
    """
    if not header_value:
        return None
    try:
        return float(max(1, int(header_value)))
    except ValueError:
        try:
            retry_at = parsedate_to_datetime(header_value)
            if retry_at.tzinfo is None:
                retry_at = retry_at.replace(tzinfo=timezone.utc)
            delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
            return float(max(1, int(delta)))
        except (ValueError, TypeError):
            return None


def _truncate(text: str) -> str:
    if len(text) > MAX_ERROR_BODY_CHARS:
        return text[:MAX_ERROR_BODY_CHARS] + "..."
    return text


class ApiClient:
    """Bearer-authenticated JSON client over a shared aiohttp session.

    Use as an async context manager so the session is closed:

        async with IntercomClient(token) as client:
            result = await client.request("GET", "/conversations/123")
    """

    def __init__(
        self,
        base_url: str,
        access_token: str,
        extra_headers: Optional[dict] = None,
        connect_timeout: float = 10.0,
        read_timeout: float = 60.0,
    ):
        if not access_token:
            raise ValueError("access_token is required")
        self.base_url = base_url.rstrip("/")
        self.access_token = access_token
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.headers = {
            "Authorization": f"Bearer {access_token}",
            "Accept": "application/json",
            "Content-Type": "application/json",
            **(extra_headers or {}),
        }
        self._session: Optional[aiohttp.ClientSession] = None

    def _create_session(self) -> aiohttp.ClientSession:
        timeout = aiohttp.ClientTimeout(
            connect=self.connect_timeout,
            sock_read=self.read_timeout,
            total=self.connect_timeout + self.read_timeout,
        )
        return aiohttp.ClientSession(timeout=timeout, headers=self.headers)

    @property
    def session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = self._create_session()
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _log_rate_limit_headers(self, response: aiohttp.ClientResponse, endpoint: str) -> None:
        remaining = response.headers.get("X-RateLimit-Remaining")
        if remaining is None:
            return
        try:
            remaining_int = int(remaining)
        except (ValueError, TypeError):
            return
        if remaining_int < RATE_LIMIT_LOW_WATERMARK:
            logger.warning(f"Rate limit low: {remaining_int} requests remaining on {endpoint}")
        else:
            logger.debug(f"Rate limit remaining: {remaining_int} on {endpoint}")

    async def request(
        self,
        method: str,
        endpoint: str,
        params: Optional[dict] = None,
        json_body: Optional[dict] = None,
    ) -> ApiResult:
        """Issue one request and classify the outcome. Never raises on HTTP errors."""
        url = f"{self.base_url}{endpoint}"
        try:
            async with self.session.request(method, url, params=params, json=json_body) as response:
                self._log_rate_limit_headers(response, endpoint)

                if response.status == 429:
                    retry_after = parse_retry_after(response.headers.get("Retry-After"))
                    logger.warning(f"Rate limited (429) on {endpoint} (retry-after={retry_after})")
                    return RateLimited(retry_after=retry_after, endpoint=endpoint)

                if response.status >= 300:
                    body = _truncate(await response.text())
                    logger.debug(f"{method} {endpoint} failed with HTTP {response.status}: {body}")
                    return Failure(status_code=response.status, error_body=body, endpoint=endpoint)

                try:
                    payload = await response.json(content_type=None)
                except ValueError as e:
                    return Failure(
                        status_code=response.status,
                        error_body=f"Invalid JSON response: {e}",
                        endpoint=endpoint,
                    )
                return Success(payload)

        except asyncio.TimeoutError:
            logger.debug(f"{method} {endpoint} timed out")
            return Failure(status_code=0, error_body="Request timed out", endpoint=endpoint)
        except aiohttp.ClientError as e:
            logger.debug(f"{method} {endpoint} connection error: {e}")
            return Failure(status_code=0, error_body=str(e) or type(e).__name__, endpoint=endpoint)


async def call_chat_completion(
    client: openai.AsyncOpenAI,
    model: str,
    messages: list[dict],
    temperature: float = 0,
    max_tokens: int = 1000,
) -> ApiResult:
    """
    Run one chat completion and classify the outcome like ApiClient.request.

    The client should be built with max_retries=0 so the SDK doesn't retry
    behind the enricher's back.

    Returns:
        Success(content_text) on 2xx
    """
    endpoint = "/chat/completions"
    try:
        response = await client.chat.completions.create(
            model=model,
            messages=messages,
            temperature=temperature,
            max_tokens=max_tokens,
        )
    except openai.RateLimitError as e:
        retry_after = None
        if getattr(e, "response", None) is not None:
            retry_after = parse_retry_after(e.response.headers.get("retry-after"))
        logger.warning(f"Rate limited (429) on {endpoint} (retry-after={retry_after})")
        return RateLimited(retry_after=retry_after, endpoint=endpoint)
    except openai.APIStatusError as e:
        return Failure(status_code=e.status_code, error_body=_truncate(str(e)), endpoint=endpoint)
    except (openai.APIConnectionError, openai.APITimeoutError) as e:
        return Failure(status_code=0, error_body=str(e) or type(e).__name__, endpoint=endpoint)

    choices = getattr(response, "choices", None) or []
    content = ""
    if choices and choices[0].message is not None:
        content = choices[0].message.content or ""
    return Success(content)
