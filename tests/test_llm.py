import httpx
import pytest
import respx
from aiolimiter import AsyncLimiter
from httpx import Response

from helpers import make_article
from trending.constants import LABEL_FALLBACK_SUMMARY, LABEL_FALLBACK_TOPIC, LLM_API_BASE
from trending.errors import ServiceUnavailable
from trending.llm import (
    ClusteringProvider,
    LLMQuotaError,
    fallback_label,
    parse_groups,
    parse_label,
)

URL = f"{LLM_API_BASE}/chat/completions"


def _provider(**kwargs):
    kwargs.setdefault("api_key", "gsk-test")
    kwargs.setdefault("limiter", AsyncLimiter(1000, 1))
    return ClusteringProvider(**kwargs)


def _chat(content):
    return Response(200, json={"choices": [{"message": {"content": content}}]})


@pytest.fixture(autouse=True)
def no_backoff(monkeypatch):
    monkeypatch.setattr("trending.llm._retry_wait", lambda retry_state: 0)


def test_parse_label():
    label = parse_label("TOPIC: Rate decision\nSUMMARY: The bank held rates.")
    assert label.topic == "Rate decision"
    assert label.summary == "The bank held rates."
    assert parse_label("just prose") is None


def test_fallback_label_uses_first_article():
    first = make_article("a", title="T" * 150, excerpt="E" * 300)
    label = fallback_label([first, make_article("b")])
    assert label.topic == "T" * 100
    assert label.summary == "E" * 200

    bare = fallback_label([make_article("c", title=" ", excerpt=None)])
    assert bare.summary == LABEL_FALLBACK_SUMMARY
    assert fallback_label([]).topic == LABEL_FALLBACK_TOPIC


def test_parse_groups_maps_indices_and_drops_singletons():
    articles = [make_article(str(i)) for i in range(5)]
    text = (
        '{"groups": [{"topic": "A", "summary": "s", "articles": [1, 3, 3]},'
        ' {"topic": "B", "summary": "s", "articles": [2]},'
        ' {"topic": "C", "summary": "s", "articles": [3, 4, 99, "x"]}]}'
    )
    groups = parse_groups(text, articles)
    assert [g.article_ids for g in groups] == [["0", "2"]]


@pytest.mark.asyncio
async def test_unconfigured_raises():
    with pytest.raises(ServiceUnavailable):
        await _provider(api_key="").generate_with_retry("hi")


@pytest.mark.asyncio
@respx.mock
async def test_label_success():
    respx.post(URL).mock(return_value=_chat("TOPIC: Storm hits coast\nSUMMARY: Outlets report damage."))
    label = await _provider().generate_cluster_label([make_article("a"), make_article("b")])
    assert label.topic == "Storm hits coast"


@pytest.mark.asyncio
@respx.mock
async def test_label_retries_then_falls_back():
    route = respx.post(URL).mock(return_value=Response(503))
    first = make_article("a", title="Original headline")
    label = await _provider(max_retries=2).generate_cluster_label([first])
    assert route.call_count == 2
    assert label.topic == "Original headline"


@pytest.mark.asyncio
@respx.mock
async def test_retry_recovers_after_transport_error():
    route = respx.post(URL).mock(
        side_effect=[httpx.ConnectError("down"), _chat("TOPIC: X\nSUMMARY: Y")]
    )
    text = await _provider().generate_with_retry("hi")
    assert text.startswith("TOPIC")
    assert route.call_count == 2


@pytest.mark.parametrize(
    "body",
    [
        Response(200, json={"choices": []}),
        Response(200, json={"choices": [{"message": {}}]}),
        Response(200, json={"choices": [{"message": {"content": None}}]}),
        Response(200, text="<html>gateway</html>"),
    ],
)
@pytest.mark.asyncio
@respx.mock
async def test_malformed_success_body_is_not_raised(body):
    route = respx.post(URL).mock(return_value=body)
    assert await _provider().generate_with_retry("hi") is None
    assert route.call_count == 1

    label = await _provider().generate_cluster_label([make_article("a", title="Headline")])
    assert label.topic == "Headline"


@pytest.mark.asyncio
@respx.mock
async def test_quota_error_propagates_from_grouping():
    respx.post(URL).mock(
        return_value=Response(429, json={"error": {"message": "Limit tokens per day reached"}})
    )
    with pytest.raises(LLMQuotaError):
        await _provider().group_articles_by_topic([make_article("a"), make_article("b")])


@pytest.mark.asyncio
@respx.mock
async def test_quota_error_on_label_uses_fallback():
    respx.post(URL).mock(
        return_value=Response(429, json={"error": {"message": "Limit requests per day reached"}})
    )
    label = await _provider().generate_cluster_label([make_article("a", title="Headline")])
    assert label.topic == "Headline"


@pytest.mark.asyncio
@respx.mock
async def test_grouping_parses_json():
    articles = [make_article("a", feed="feed-1"), make_article("b", feed="feed-2")]
    route = respx.post(URL).mock(
        return_value=_chat('{"groups": [{"topic": "T", "summary": "S", "articles": [1, 2]}]}')
    )
    groups = await _provider().group_articles_by_topic(articles)
    assert groups[0].article_ids == ["a", "b"]
    assert b"json_object" in route.calls[0].request.content
