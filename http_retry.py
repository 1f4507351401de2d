"""
HTTP retry module for Bot Builder.
Wraps a single outbound aiohttp call with bounded attempts, per-attempt
deadlines and backoff, and classifies response bodies.
"""
import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, FrozenSet, Optional, Union

import aiohttp

from config import MAX_ATTEMPTS, RETRY_BASE_DELAY
from diagnostics import RequestTrace, excerpt
from errors import ExhaustedRetriesError, MalformedResponseError, RequestTimeoutError

logger = logging.getLogger(__name__)

GATEWAY_STATUSES: FrozenSet[int] = frozenset({502, 503, 504})
# Cloudflare origin timeouts, retried by the chat client
EDGE_TIMEOUT_STATUSES: FrozenSet[int] = frozenset({522, 524})

Sleep = Callable[[float], Awaitable[Any]]


@dataclass
class HttpResponse:
    """Status, headers and fully-read body of one HTTP exchange."""

    status: int
    text: str = ""
    reason: str = ""
    content_type: str = ""
    headers: Dict[str, str] = field(default_factory=dict)
    url: str = ""

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 300


@dataclass
class RetryPolicy:
    max_attempts: int = MAX_ATTEMPTS
    timeout: float = 15.0
    base_delay: float = RETRY_BASE_DELAY
    max_delay: float = 5.0
    retriable_statuses: FrozenSet[int] = GATEWAY_STATUSES

    def status_delay(self, attempt: int) -> float:
        """Exponential delay after a retriable status on the given attempt."""
        return min(self.base_delay * (2 ** (attempt - 1)), self.max_delay)

    def error_delay(self, attempt: int) -> float:
        """Linear delay after a transport error or timeout on the given attempt."""
        return self.base_delay * attempt


@dataclass
class RetryState:
    max_attempts: int
    attempt: int = 1
    last_error: Optional[BaseException] = None

    @property
    def has_attempts_left(self) -> bool:
        return self.attempt < self.max_attempts


async def send_with_retry(
    operation: Callable[[], Awaitable[HttpResponse]],
    policy: RetryPolicy,
    trace: Optional[RequestTrace] = None,
    label: str = "request",
    sleep: Sleep = asyncio.sleep,
) -> HttpResponse:
    """
    Run operation until it yields a non-retriable response or attempts run out.

    Args:
        operation: Performs exactly one HTTP call and returns its response
        policy: Attempts, deadline and backoff settings
        trace: Diagnostic context of the calling operation
        label: Name used in diagnostics and timeout messages
        sleep: Awaitable sleep, injectable for tests

    Returns:
        HttpResponse: The last response received (2xx or otherwise)

    Raises:
        ExhaustedRetriesError: Every attempt ended in a transport error or timeout
    """
    state = RetryState(max_attempts=policy.max_attempts)

    while state.attempt <= state.max_attempts:
        if trace:
            trace.log("Making Request", {"target": label, "attempt": state.attempt,
                                         "maxAttempts": state.max_attempts})
        try:
            response = await asyncio.wait_for(operation(), timeout=policy.timeout)
        except asyncio.TimeoutError:
            state.last_error = RequestTimeoutError(label, policy.timeout)
        except (aiohttp.ClientError, OSError) as e:
            state.last_error = e
        else:
            if response.status in policy.retriable_statuses and state.has_attempts_left:
                delay = policy.status_delay(state.attempt)
                if trace:
                    trace.log("Retrying after error", {"target": label, "attempt": state.attempt,
                                                       "status": response.status, "delay": delay}, "warn")
                await sleep(delay)
                state.attempt += 1
                continue
            return response

        if trace:
            trace.log("Request Attempt Failed", {"target": label, "attempt": state.attempt,
                                                 "error": str(state.last_error)}, "warn")
        if not state.has_attempts_left:
            break
        await sleep(policy.error_delay(state.attempt))
        state.attempt += 1

    logger.warning(f"{label} failed after {state.max_attempts} attempts: {state.last_error}")
    raise ExhaustedRetriesError(state.max_attempts, state.last_error) from state.last_error


async def fetch(session: aiohttp.ClientSession, method: str, url: str, **kwargs) -> HttpResponse:
    """Perform one request and read the whole body as text."""
    async with session.request(method, url, **kwargs) as response:
        text = await response.text()
        return HttpResponse(
            status=response.status,
            text=text,
            reason=response.reason or "",
            content_type=response.content_type or "",
            headers=dict(response.headers),
            url=str(response.url),
        )


@dataclass
class ParsedJson:
    data: Any


@dataclass
class HtmlErrorPage:
    excerpt: str


@dataclass
class UnknownBody:
    excerpt: str
    reason: str


Body = Union[ParsedJson, HtmlErrorPage, UnknownBody]

_PRE_RE = re.compile(r"<pre>(.*?)</pre>", re.DOTALL | re.IGNORECASE)
_TAG_RE = re.compile(r"<[^>]+>")
_HTML_PREFIXES = ("<!doctype html", "<html")


def classify_body(response: HttpResponse) -> Body:
    """Classify a body as JSON, an HTML error page, or something else."""
    text = response.text or ""
    head = text.lstrip()[:20].lower()
    if "html" in response.content_type.lower() or head.startswith(_HTML_PREFIXES):
        match = _PRE_RE.search(text)
        snippet = match.group(1).strip() if match else " ".join(_TAG_RE.sub(" ", text).split())
        return HtmlErrorPage(excerpt=excerpt(snippet))
    if not text.strip():
        return UnknownBody(excerpt="", reason="empty response")
    try:
        return ParsedJson(data=json.loads(text))
    except ValueError as e:
        return UnknownBody(excerpt=excerpt(text), reason=str(e))


def parse_json_body(response: HttpResponse, what: str) -> Any:
    """
    Return the decoded JSON body or raise MalformedResponseError.

    Args:
        response: Response to decode
        what: Short description of the upstream for the error message
    """
    body = classify_body(response)
    if isinstance(body, ParsedJson):
        return body.data
    if isinstance(body, HtmlErrorPage):
        raise MalformedResponseError(
            f"Received HTML error page instead of JSON response from {what}",
            body.excerpt, response.status)
    raise MalformedResponseError(
        f"Failed to parse {what} response ({body.reason}). "
        "The server may be misconfigured or experiencing issues.",
        body.excerpt, response.status)
