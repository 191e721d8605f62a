"""
Client for the external transcript analysis endpoint.

One call to analyze() sends one transcript to
POST {endpoint}/prediction/{chatflow_id} and returns the analysis payload as a
plain dict. The call never raises for service trouble: timeouts, network
errors, error statuses and unparsable replies all come back as the degraded
placeholder payload, so one bad record cannot stall a batch.

The service replies with one of three envelopes:
- {"json": {...}}          structured result (sometimes a JSON string)
- {"text": "..."}          raw model text, either JSON or a ```json fenced block
- {...}                    anything else is taken as the result itself
"""

import asyncio
import json
import logging
import random
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Any, Literal, Optional

import aiohttp

from .config import PipelineConfig
from .models import ANALYSIS_FAILED_TAG

logger = logging.getLogger(__name__)

EnvelopeKind = Literal["json", "text", "direct"]

FENCED_JSON_RE = re.compile(r"```(?:json)?\s*([\s\S]*?)\s*```")

DEGRADED_PAYLOAD: dict = {
    "summary": "Failed to analyze transcript due to an error.",
    "coaching": "No coaching available due to analysis failure.",
    "tags": [ANALYSIS_FAILED_TAG],
    "sentiment_score": 5,  # neutral midpoint
    "resolution_status": "unresolved",
    "escalated": False,
    "call_type": "unknown",
    "persona": None,
}


def degraded_payload() -> dict:
    """Fresh copy of the placeholder returned when analysis cannot complete."""
    payload = dict(DEGRADED_PAYLOAD)
    payload["tags"] = list(DEGRADED_PAYLOAD["tags"])
    return payload


class AnalysisRequestError(Exception):
    """Non-2xx response from the analysis service."""

    def __init__(self, status: int, body: str = ""):
        self.status = status
        self.body = body
        super().__init__(f"Analysis service returned status {status}: {body[:500]}")


class ResponseParseError(ValueError):
    """Response body did not match any known envelope."""


# ==================== ENVELOPE PARSING ====================

def classify_envelope(body: Any) -> EnvelopeKind:
    """Decide which envelope a decoded response body uses.

    Checked in priority order: structured `json` field, then `text` field,
    then the object itself.

    Raises:
        ResponseParseError: if the body is not a JSON object
    """
    if not isinstance(body, dict):
        raise ResponseParseError(f"Expected a JSON object, got {type(body).__name__}")
    if body.get("json") is not None:
        return "json"
    text = body.get("text")
    if isinstance(text, str) and text.strip():
        return "text"
    return "direct"


def _require_object(value: Any, source: str) -> dict:
    if not isinstance(value, dict):
        raise ResponseParseError(f"{source} did not contain a JSON object")
    return value


def _parse_json_field(value: Any) -> dict:
    if isinstance(value, str):
        try:
            value = json.loads(value)
        except json.JSONDecodeError as e:
            raise ResponseParseError(f"Could not parse 'json' field: {e}") from e
    return _require_object(value, "'json' field")


def _parse_text_field(value: Any) -> dict:
    if not isinstance(value, str):
        raise ResponseParseError("'text' field is not a string")
    raw_reply = value.strip()

    try:
        return _require_object(json.loads(raw_reply), "'text' field")
    except json.JSONDecodeError:
        pass

    match = FENCED_JSON_RE.search(raw_reply)
    if not match:
        raise ResponseParseError(f"Could not parse JSON from response text: {raw_reply[:200]}")
    try:
        return _require_object(json.loads(match.group(1).strip()), "fenced block")
    except json.JSONDecodeError as e:
        raise ResponseParseError(f"Fenced block is not valid JSON: {e}") from e


def parse_envelope(body: Any) -> dict:
    """Extract the analysis payload from a decoded response body.

    Raises:
        ResponseParseError: if no envelope yields a JSON object
    """
    kind = classify_envelope(body)
    if kind == "json":
        return _parse_json_field(body["json"])
    if kind == "text":
        return _parse_text_field(body["text"])
    return body


# ==================== CLIENT ====================

class AnalysisClient:
    """Sends transcripts to the analysis chatflow.

    Use as an async context manager to share one HTTP session across a run;
    outside a context each call opens its own session.
    """

    # 429 handling: bounded retries, always inside the per-record timeout
    MAX_RATE_LIMIT_RETRIES = 2
    RETRY_DELAY_BASE = 2  # seconds, exponential: 2s, 4s

    def __init__(
        self,
        config: PipelineConfig,
        system_prompt: Optional[str] = None,
        example_schema: Optional[Any] = None,
    ):
        self.config = config
        self.system_prompt = system_prompt
        self.example_schema = example_schema
        self._session_cm = None
        self._session: Optional[aiohttp.ClientSession] = None

    async def __aenter__(self) -> "AnalysisClient":
        self._session_cm = self._get_aiohttp_session()
        self._session = await self._session_cm.__aenter__()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        cm, self._session_cm, self._session = self._session_cm, None, None
        if cm is not None:
            await cm.__aexit__(exc_type, exc, tb)

    def _get_aiohttp_session(self) -> aiohttp.ClientSession:
        """Create an aiohttp session with auth headers and the run timeout."""
        timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
        headers = {"Content-Type": "application/json"}
        if self.config.api_token:
            headers["Authorization"] = f"Bearer {self.config.api_token}"
        return aiohttp.ClientSession(timeout=timeout, headers=headers)

    @staticmethod
    def _parse_retry_after(header_value: str) -> int:
        """Seconds to wait for a Retry-After value (integer or HTTP-date), minimum 1."""
        try:
            return max(1, int(header_value))
        except ValueError:
            try:
                retry_at = parsedate_to_datetime(header_value)
                if retry_at.tzinfo is None:
                    retry_at = retry_at.replace(tzinfo=timezone.utc)
                delta = (retry_at - datetime.now(timezone.utc)).total_seconds()
                return max(1, int(delta))
            except (ValueError, TypeError):
                return 10

    @staticmethod
    def _add_jitter(base_delay: float) -> float:
        """Add 0-50% jitter so concurrent retries don't collide."""
        return base_delay + random.uniform(0, 0.5 * base_delay)

    def build_request_body(self, transcript: str, example_schema: Optional[Any] = None) -> dict:
        """Request body for the prediction endpoint."""
        body: dict = {"question": transcript}
        override: dict = {}
        if self.system_prompt:
            override["systemMessagePrompt"] = self.system_prompt
        schema = example_schema if example_schema is not None else self.example_schema
        if schema is not None:
            override["exampleJson"] = schema
        if override:
            body["overrideConfig"] = override
        return body

    async def _post(self, session: aiohttp.ClientSession, body: dict) -> dict:
        """POST once (plus 429 retries) and return the parsed payload.

        Raises:
            AnalysisRequestError: on a non-2xx status
            ResponseParseError: if the body matches no envelope
            aiohttp.ClientError: on connection-level failures
        """
        url = self.config.prediction_url

        for attempt in range(self.MAX_RATE_LIMIT_RETRIES + 1):
            async with session.post(url, json=body) as response:
                if response.status == 429 and attempt < self.MAX_RATE_LIMIT_RETRIES:
                    retry_after = response.headers.get("Retry-After")
                    if retry_after:
                        base_delay = self._parse_retry_after(retry_after)
                    else:
                        base_delay = self.RETRY_DELAY_BASE * (2 ** attempt)
                    delay = self._add_jitter(base_delay)
                    logger.warning(
                        f"Rate limited (429), waiting {delay:.1f}s "
                        f"(attempt {attempt + 1}/{self.MAX_RATE_LIMIT_RETRIES + 1})"
                    )
                    await asyncio.sleep(delay)
                    continue

                raw = await response.read()
                if response.status >= 400:
                    raise AnalysisRequestError(response.status, raw.decode("utf-8", errors="replace"))

                try:
                    data = json.loads(raw.decode("utf-8"))
                except UnicodeDecodeError as e:
                    raise ResponseParseError(f"Response body is not valid UTF-8: {e}") from e
                except json.JSONDecodeError as e:
                    raise ResponseParseError(f"Response body is not JSON: {e}") from e
                return parse_envelope(data)

        raise RuntimeError("Unexpected retry loop exit")

    async def _request(
        self,
        session: aiohttp.ClientSession,
        transcript: str,
        example_schema: Optional[Any],
        record_id: str,
    ) -> dict:
        body = self.build_request_body(transcript, example_schema)
        logger.debug(f"[{record_id}] Request payload size: {len(json.dumps(body))} bytes")
        try:
            return await self._post(session, body)
        except AnalysisRequestError as e:
            if e.status < 500 or len(transcript) <= self.config.truncate_threshold:
                raise
            logger.warning(
                f"[{record_id}] Full transcript failed with status {e.status} "
                f"({len(transcript)} chars), retrying with first {self.config.truncated_length} chars"
            )

        short_body = self.build_request_body(transcript[: self.config.truncated_length], example_schema)
        payload = await self._post(session, short_body)
        logger.info(f"[{record_id}] Truncated transcript attempt succeeded")
        return payload

    async def _analyze_with_session(
        self, transcript: str, example_schema: Optional[Any], record_id: str
    ) -> dict:
        if self._session is not None:
            return await self._request(self._session, transcript, example_schema, record_id)
        async with self._get_aiohttp_session() as session:
            return await self._request(session, transcript, example_schema, record_id)

    async def analyze(
        self,
        transcript: str,
        example_schema: Optional[Any] = None,
        record_id: str = "-",
    ) -> dict:
        """Analyze one transcript.

        Callers skip empty transcripts; this method does not special-case them.

        Args:
            transcript: Transcript text
            example_schema: Optional exampleJson override for this call
            record_id: Identifier used only in log lines

        Returns:
            The analysis payload, or degraded_payload() if the call failed
        """
        try:
            return await asyncio.wait_for(
                self._analyze_with_session(transcript, example_schema, record_id),
                timeout=self.config.request_timeout,
            )
        except asyncio.TimeoutError:
            logger.error(f"[{record_id}] Analysis timed out after {self.config.request_timeout:.0f}s")
        except AnalysisRequestError as e:
            logger.error(f"[{record_id}] Analysis request failed: {e}")
        except ResponseParseError as e:
            logger.error(f"[{record_id}] Could not parse analysis response: {e}")
        except aiohttp.ClientError as e:
            logger.error(f"[{record_id}] Analysis connection error: {e}")
        return degraded_payload()
