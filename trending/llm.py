"""Clustering/labelling provider backed by an OpenAI-compatible chat API (Groq)."""

from __future__ import annotations

import logging
import os
import re
from collections.abc import Sequence
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Optional

import httpx
from aiolimiter import AsyncLimiter
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception_type,
    stop_after_attempt,
    wait_random_exponential,
)

from trending.constants import (
    HTTP_CONNECT_TIMEOUT,
    HTTP_POOL_TIMEOUT,
    HTTP_READ_TIMEOUT,
    HTTP_USER_AGENT,
    HTTP_WRITE_TIMEOUT,
    LABEL_EXCERPT_MAX_CHARS,
    LABEL_FALLBACK_SUMMARY,
    LABEL_FALLBACK_TOPIC,
    LABEL_SAMPLE_ARTICLES,
    LABEL_SUMMARY_MAX_CHARS,
    LABEL_TOPIC_MAX_CHARS,
    LLM_429_COOLDOWN_BASE,
    LLM_429_COOLDOWN_MAX,
    LLM_API_BASE,
    LLM_CLUSTER_MODEL,
    LLM_GROUPING_MAX_TOKENS,
    LLM_LABEL_MAX_TOKENS,
    LLM_MAX_RETRIES,
    LLM_MIN_REQUEST_INTERVAL,
    RATE_LIMIT_ERROR_BACKOFF_BASE,
    RATE_LIMIT_ERROR_BACKOFF_MAX,
    TEXT_CLUSTER_MAX_ARTICLES,
)
from trending.errors import ServiceUnavailable, TransientCallFailure
from trending.llm_utils import build_payload, safe_json_loads
from trending.models import Article, ClusterLabel, TopicGroup

logger = logging.getLogger(__name__)


class LLMQuotaError(TransientCallFailure):
    """Raised when the provider reports a daily quota that retrying won't fix."""


class LLMRetryableError(TransientCallFailure):
    """Raised for retryable provider errors."""

    def __init__(
        self,
        message: str,
        status_code: int | None = None,
        cooldown: float | None = None,
        is_rate_limit: bool = False,
    ) -> None:
        super().__init__(message, status_code=status_code)
        self.cooldown = cooldown
        self.is_rate_limit = is_rate_limit


_LLM_LIMITER: AsyncLimiter = AsyncLimiter(1, max(1.0, float(LLM_MIN_REQUEST_INTERVAL)))


def _parse_retry_after(value: str) -> float | None:
    value = value.strip()
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        pass

    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if dt is None:
        return None
    now = datetime.now(dt.tzinfo)
    return max(0.0, (dt - now).total_seconds())


def _retry_after_seconds(resp: httpx.Response) -> float | None:
    header = resp.headers.get("retry-after")
    if not header:
        return None
    return _parse_retry_after(header)


def _extract_error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text.strip()
    if isinstance(data, dict):
        err = data.get("error")
        if isinstance(err, dict):
            msg = err.get("message")
            if isinstance(msg, str):
                return msg.strip()
    return resp.text.strip()


_RATE_LIMIT_WAIT = wait_random_exponential(
    min=RATE_LIMIT_ERROR_BACKOFF_BASE, max=RATE_LIMIT_ERROR_BACKOFF_MAX
)
_RATE_LIMIT_429_WAIT = wait_random_exponential(
    min=LLM_429_COOLDOWN_BASE, max=LLM_429_COOLDOWN_MAX
)


def _retry_wait(retry_state: RetryCallState) -> float:
    outcome = retry_state.outcome
    exc = outcome.exception() if outcome is not None else None
    if isinstance(exc, LLMRetryableError):
        if exc.cooldown is not None:
            return exc.cooldown
        if exc.is_rate_limit:
            return _RATE_LIMIT_429_WAIT(retry_state)
    return _RATE_LIMIT_WAIT(retry_state)


_TOPIC_RE = re.compile(r"TOPIC:\s*(.+?)(?:\n|$)")
_SUMMARY_RE = re.compile(r"SUMMARY:\s*(.+?)(?:\n|$)")


def fallback_label(articles: Sequence[Article]) -> ClusterLabel:
    """Label from the first member when the provider can't produce one."""
    first = articles[0] if articles else None
    topic = (first.title or "")[:LABEL_TOPIC_MAX_CHARS] if first else ""
    summary = (first.excerpt or "")[:LABEL_SUMMARY_MAX_CHARS] if first else ""
    return ClusterLabel(
        topic=topic or LABEL_FALLBACK_TOPIC,
        summary=summary or LABEL_FALLBACK_SUMMARY,
    )


def parse_label(text: str | None) -> ClusterLabel | None:
    if not text:
        return None
    topic = _TOPIC_RE.search(text)
    summary = _SUMMARY_RE.search(text)
    if not topic or not summary:
        return None
    topic_text = topic.group(1).strip().strip("[]\"")[:LABEL_TOPIC_MAX_CHARS]
    summary_text = summary.group(1).strip().strip("[]")[:LABEL_SUMMARY_MAX_CHARS]
    if not topic_text or not summary_text:
        return None
    return ClusterLabel(topic=topic_text, summary=summary_text)


def _format_article_line(idx: int, article: Article) -> str:
    line = f'[{idx}] "{article.title}" ({article.feed_name or "unknown source"})'
    if article.excerpt:
        line += f"\n   {article.excerpt[:LABEL_EXCERPT_MAX_CHARS]}..."
    return line


def build_label_prompt(articles: Sequence[Article]) -> str:
    listing = "\n\n".join(
        _format_article_line(i, a)
        for i, a in enumerate(articles[:LABEL_SAMPLE_ARTICLES], 1)
    )
    return f"""Analyze these related news articles and generate a topic title and summary.

Articles:
{listing}

Generate:
1. A concise topic title (3-8 words) that captures the main story
2. A one-sentence summary (max 150 characters) explaining what's happening

Format your response exactly as:
TOPIC: [your topic title]
SUMMARY: [your summary]

Be factual and neutral. Focus on what the articles have in common."""


def build_grouping_prompt(articles: Sequence[Article]) -> str:
    listing = "\n".join(
        f'[{i}] "{a.title}" ({a.feed_name or "unknown source"})'
        for i, a in enumerate(articles, 1)
    )
    return f"""Group these news articles into stories that several outlets are covering.

Articles:
{listing}

Rules:
- Only group articles about the same specific event or story
- Each group needs at least 2 articles from different sources
- An article belongs to at most one group
- Leave unrelated articles out

Return JSON only:
{{"groups": [{{"topic": "3-8 word title", "summary": "one sentence", "articles": [1, 4]}}]}}"""


def parse_groups(text: str | None, articles: Sequence[Article]) -> list[TopicGroup]:
    data = safe_json_loads(text)
    raw_groups = data.get("groups")
    if not isinstance(raw_groups, list):
        return []

    groups: list[TopicGroup] = []
    used: set[str] = set()
    for raw in raw_groups:
        if not isinstance(raw, dict):
            continue
        ids: list[str] = []
        for ref in raw.get("articles") or []:
            try:
                idx = int(ref) - 1
            except (TypeError, ValueError):
                continue
            if 0 <= idx < len(articles):
                aid = articles[idx].id
                if aid not in used and aid not in ids:
                    ids.append(aid)
        if len(ids) < 2:
            continue
        used.update(ids)
        topic = str(raw.get("topic") or "").strip()[:LABEL_TOPIC_MAX_CHARS]
        summary = str(raw.get("summary") or "").strip()[:LABEL_SUMMARY_MAX_CHARS]
        groups.append(
            TopicGroup(
                topic=topic or LABEL_FALLBACK_TOPIC,
                summary=summary or LABEL_FALLBACK_SUMMARY,
                article_ids=ids,
            )
        )
    return groups


class ClusteringProvider:
    """Topic labels and text-mode grouping from a chat completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = LLM_CLUSTER_MODEL,
        base_url: str = LLM_API_BASE,
        max_retries: int = LLM_MAX_RETRIES,
        client: Optional[httpx.AsyncClient] = None,
        limiter: Optional[AsyncLimiter] = None,
    ) -> None:
        self.api_key = api_key if api_key is not None else os.environ.get("GROQ_API_KEY")
        self.model = model
        self.base_url = base_url.rstrip("/")
        self.max_retries = max_retries
        self._client = client
        self._limiter = limiter or _LLM_LIMITER

    def is_configured(self) -> bool:
        return bool(self.api_key)

    async def generate_with_retry(
        self, prompt: str, config: dict[str, object] | None = None
    ) -> str | None:
        """Call the chat API with exponential backoff.

        Returns None when retries run out or the provider rejects the request;
        LLMQuotaError propagates.
        """
        if not self.is_configured():
            raise ServiceUnavailable("GROQ_API_KEY not set")

        payload = build_payload(model=self.model, prompt=prompt, config=config)
        if self._client is not None:
            return await self._post_with_retry(self._client, payload)

        timeout = httpx.Timeout(
            connect=HTTP_CONNECT_TIMEOUT,
            read=HTTP_READ_TIMEOUT,
            write=HTTP_WRITE_TIMEOUT,
            pool=HTTP_POOL_TIMEOUT,
        )
        async with httpx.AsyncClient(timeout=timeout) as client:
            return await self._post_with_retry(client, payload)

    async def _post_with_retry(
        self, client: httpx.AsyncClient, payload: dict[str, object]
    ) -> str | None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.max_retries),
                retry=retry_if_exception_type(LLMRetryableError),
                wait=_retry_wait,
                reraise=True,
            ):
                with attempt:
                    try:
                        async with self._limiter:
                            resp = await client.post(
                                f"{self.base_url}/chat/completions",
                                headers={
                                    "Authorization": f"Bearer {self.api_key}",
                                    "Content-Type": "application/json",
                                    "User-Agent": HTTP_USER_AGENT,
                                },
                                json=payload,
                            )
                    except httpx.HTTPError as e:
                        raise LLMRetryableError(str(e) or type(e).__name__) from e

                    if resp.status_code == 200:
                        try:
                            data = resp.json()
                            content = data["choices"][0]["message"]["content"]
                        except (ValueError, KeyError, IndexError, TypeError) as e:
                            logger.error("Malformed LLM response body: %s", e)
                            return None
                        return content if isinstance(content, str) else None

                    if resp.status_code == 429:
                        error_msg = _extract_error_message(resp)
                        msg_lower = error_msg.lower()
                        if "tokens per day" in msg_lower or " tpd" in msg_lower:
                            raise LLMQuotaError(error_msg, status_code=429)
                        if "requests per day" in msg_lower or " rpd" in msg_lower:
                            raise LLMQuotaError(error_msg, status_code=429)
                        raise LLMRetryableError(
                            error_msg,
                            status_code=429,
                            cooldown=_retry_after_seconds(resp),
                            is_rate_limit=True,
                        )

                    if resp.status_code in {408, 500, 502, 503, 504}:
                        raise LLMRetryableError(
                            f"LLM API error {resp.status_code}",
                            status_code=resp.status_code,
                        )

                    error_msg = _extract_error_message(resp)
                    logger.error(
                        "LLM API error %d: %s", resp.status_code, error_msg or resp.text
                    )
                    return None
        except LLMRetryableError as e:
            logger.error("LLM API call failed after %d retries: %s", self.max_retries, e)
            return None
        return None

    async def generate_cluster_label(self, articles: Sequence[Article]) -> ClusterLabel:
        """Topic and summary for a cluster; never raises."""
        fallback = fallback_label(articles)
        if not articles or not self.is_configured():
            return fallback
        try:
            text = await self.generate_with_retry(
                build_label_prompt(articles),
                config={"max_tokens": LLM_LABEL_MAX_TOKENS},
            )
        except LLMQuotaError as e:
            logger.warning("LLM quota exhausted, using fallback label: %s", e)
            return fallback
        label = parse_label(text)
        if label is None:
            logger.warning("Could not parse cluster label response, using fallback")
            return fallback
        return label

    async def group_articles_by_topic(
        self, articles: Sequence[Article]
    ) -> list[TopicGroup]:
        """Ask the provider to group articles by story (text mode)."""
        sample = list(articles[:TEXT_CLUSTER_MAX_ARTICLES])
        if len(sample) < 2:
            return []
        text = await self.generate_with_retry(
            build_grouping_prompt(sample),
            config={
                "max_tokens": LLM_GROUPING_MAX_TOKENS,
                "response_mime_type": "application/json",
            },
        )
        groups = parse_groups(text, sample)
        logger.info(
            "Text grouping returned %d groups for %d articles", len(groups), len(sample)
        )
        return groups
