from datetime import timedelta
from itertools import combinations

import numpy as np
import pytest
import respx
from aiolimiter import AsyncLimiter
from helpers import NOW, FakeClusteringProvider, make_article, topic_vector
from httpx import Response
from hypothesis import given, settings as hsettings, strategies as st

from trending.clustering import (
    ClusterGenerator,
    extract_keywords,
    form_clusters,
    keyword_overlap,
    relevance_score,
    time_span_hours,
)
from trending.constants import LLM_API_BASE
from trending.llm import ClusteringProvider
from trending.models import ClusterSettings, TopicGroup


def _embedded(article_id, topic, feed, hours_ago=1.0, **kwargs):
    return make_article(
        article_id,
        feed=feed,
        hours_ago=hours_ago,
        embedding=topic_vector(topic, jitter=sum(map(ord, article_id))),
        **kwargs,
    )


def _ids(candidate):
    return sorted(a.id for a in candidate.members)


def test_form_clusters_groups_by_topic_across_sources():
    articles = [
        _embedded("a1", 0, "feed-a"),
        _embedded("a2", 0, "feed-b"),
        _embedded("a3", 0, "feed-c"),
        _embedded("b1", 1, "feed-a"),
        _embedded("b2", 1, "feed-b"),
        _embedded("c1", 2, "feed-a"),
    ]

    candidates = form_clusters(articles)

    assert sorted(_ids(c) for c in candidates) == [["a1", "a2", "a3"], ["b1", "b2"]]
    for c in candidates:
        assert c.generation_method == "vector"
        assert 0.75 <= c.avg_similarity <= 1.0


def test_single_source_group_is_discarded():
    articles = [_embedded("s1", 3, "feed-a"), _embedded("s2", 3, "feed-a")]
    assert form_clusters(articles) == []


def test_time_window_rejects_spread_out_group():
    articles = [
        _embedded("x1", 4, "feed-a", hours_ago=1),
        _embedded("x2", 4, "feed-b", hours_ago=60),
    ]
    assert form_clusters(articles) == []
    assert len(form_clusters(articles, ClusterSettings(time_window_hours=0))) == 1


def test_keyword_layer_requires_shared_terms():
    strict = ClusterSettings(keyword_overlap_min=2)
    vec = topic_vector(5)
    unrelated = [
        make_article("k1", feed="feed-a", title="Volcano erupts overnight", excerpt=None, embedding=vec),
        make_article("k2", feed="feed-b", title="Football final tonight", excerpt=None, embedding=vec),
    ]
    related = [
        make_article("k3", feed="feed-a", title="Parliament approves budget reform", excerpt=None, embedding=vec),
        make_article("k4", feed="feed-b", title="Parliament approves budget plan", excerpt=None, embedding=vec),
    ]

    assert form_clusters(unrelated, strict) == []
    assert len(form_clusters(unrelated)) == 1
    assert [_ids(c) for c in form_clusters(related, strict)] == [["k3", "k4"]]


def test_mismatched_embedding_sizes_are_skipped():
    articles = [
        _embedded("m1", 6, "feed-a"),
        _embedded("m2", 6, "feed-b"),
        make_article("m3", feed="feed-c", hours_ago=0.5, embedding=[1.0, 0.0, 0.0]),
    ]
    candidates = form_clusters(articles)
    assert [_ids(c) for c in candidates] == [["m1", "m2"]]


def test_keyword_helpers():
    words = extract_keywords("The Parliament approves budget reform")
    assert "parliament" in words
    assert "parliament_approves" in words
    assert "the" not in words
    assert keyword_overlap({"budget", "budget_reform"}, {"budget", "budget_reform", "tax"}) == 3
    assert time_span_hours([]) is None
    assert relevance_score(4, 3) == 12.0


def test_settings_clamp_minimums():
    s = ClusterSettings(min_sources=1, min_articles=0, max_members=1)
    assert (s.min_sources, s.min_articles, s.max_members) == (2, 2, 2)
    with pytest.raises(ValueError):
        ClusterSettings(ttl_hours=0)


article_rows = st.lists(
    st.tuples(
        st.integers(min_value=0, max_value=3),
        st.integers(min_value=0, max_value=3),
        st.floats(min_value=0, max_value=120, allow_nan=False),
    ),
    min_size=0,
    max_size=20,
)


@hsettings(max_examples=60, deadline=None)
@given(article_rows)
def test_candidates_hold_cluster_invariants(rows):
    articles = [
        _embedded(f"p{i}", topic, f"feed-{feed}", hours_ago=hours)
        for i, (topic, feed, hours) in enumerate(rows)
    ]
    cfg = ClusterSettings()
    candidates = form_clusters(articles, cfg)

    seen: set[str] = set()
    for c in candidates:
        ids = [a.id for a in c.members]
        assert len(ids) >= 2
        assert len(c.sources) >= 2
        assert not seen & set(ids)
        seen.update(ids)
        assert time_span_hours(c.members) <= cfg.time_window_hours
        for x, y in combinations(c.members, 2):
            sim = float(np.dot(x.embedding, y.embedding))
            assert sim >= cfg.similarity_threshold - 1e-6


def _generator(storage, clock, provider=None, **settings):
    return ClusterGenerator(
        storage,
        provider or FakeClusteringProvider(),
        ClusterSettings(**settings),
        clock=clock,
    )


@pytest.mark.asyncio
async def test_generate_clusters_persists_labelled_clusters(storage, clock):
    await storage.upsert_articles(
        [
            _embedded("a1", 0, "feed-a", hours_ago=1),
            _embedded("a2", 0, "feed-b", hours_ago=2),
            _embedded("a3", 0, "feed-b", hours_ago=3),
            _embedded("b1", 1, "feed-a"),
            _embedded("b2", 1, "feed-c"),
        ]
    )
    provider = FakeClusteringProvider()
    generator = _generator(storage, clock, provider)

    result = await generator.generate_clusters()

    assert result.method == "vector"
    assert result.clusters_created == 2
    assert result.articles_processed == 5
    assert provider.label_calls == 2
    assert provider.grouping_calls == 0

    top = result.clusters[0]
    assert sorted(top.article_ids) == ["a1", "a2", "a3"]
    assert top.sources == ["SOURCE A", "SOURCE B"]
    assert top.relevance_score == 6.0
    assert top.topic.startswith("Story about")
    assert top.created_at == NOW
    assert top.expires_at == NOW + timedelta(hours=48)
    assert top.timeframe_start == NOW - timedelta(hours=3)
    assert top.timeframe_end == NOW - timedelta(hours=1)
    assert set(storage.clusters) == {c.id for c in result.clusters}


@pytest.mark.asyncio
async def test_repeat_runs_produce_independent_batches(storage, clock):
    await storage.upsert_articles([_embedded("a1", 0, "feed-a"), _embedded("a2", 0, "feed-b")])
    generator = _generator(storage, clock)

    first = await generator.generate_clusters()
    second = await generator.generate_clusters()

    assert first.clusters[0].id != second.clusters[0].id
    assert len(storage.clusters) == 2


@pytest.mark.asyncio
async def test_text_mode_fallback_uses_provider_groups(storage, clock):
    await storage.upsert_articles(
        [
            make_article("t1", feed="feed-a"),
            make_article("t2", feed="feed-b"),
            make_article("t3", feed="feed-b"),
            make_article("t4", feed="feed-c"),
        ]
    )
    provider = FakeClusteringProvider(
        groups=[
            TopicGroup("Port strike", "Dock workers walk out.", ["t1", "t2", "missing"]),
            TopicGroup("Same outlet", "Only one source.", ["t2", "t3"]),
        ]
    )
    generator = _generator(storage, clock, provider)

    result = await generator.generate_clusters()

    assert result.method == "text"
    assert result.articles_processed == 4
    assert provider.grouping_calls == 1
    assert provider.label_calls == 0
    (cluster,) = result.clusters
    assert cluster.topic == "Port strike"
    assert cluster.article_ids == ["t1", "t2"]
    assert cluster.avg_similarity == 0.0
    assert cluster.generation_method == "text"


@pytest.mark.asyncio
async def test_no_text_fallback_without_provider(storage, clock):
    await storage.upsert_articles([make_article("t1", feed="feed-a"), make_article("t2", feed="feed-b")])
    provider = FakeClusteringProvider(configured=False, groups=[TopicGroup("x", "y", ["t1", "t2"])])

    result = await _generator(storage, clock, provider).generate_clusters()

    assert result.clusters == []
    assert provider.grouping_calls == 0


@pytest.mark.asyncio
async def test_feed_scope_and_lookback(storage, clock):
    await storage.upsert_articles(
        [
            _embedded("a1", 0, "feed-a"),
            _embedded("a2", 0, "feed-b"),
            _embedded("old", 0, "feed-c", hours_ago=30),
        ]
    )
    generator = _generator(storage, clock, time_window_hours=0)

    scoped = await generator.generate_clusters(feed_ids=["feed-a", "feed-c"], hours_back=48)
    assert sorted(scoped.clusters[0].article_ids) == ["a1", "old"]

    recent = await generator.generate_clusters(hours_back=12)
    assert sorted(recent.clusters[0].article_ids) == ["a1", "a2"]


@pytest.mark.asyncio
async def test_expire_and_active_clusters(storage, clock):
    await storage.upsert_articles([_embedded("a1", 0, "feed-a"), _embedded("a2", 0, "feed-b")])
    generator = _generator(storage, clock)
    await generator.generate_clusters()

    clock.advance(hours=24)
    await storage.upsert_articles(
        [
            _embedded("b1", 1, "feed-a", now=clock.now),
            _embedded("b2", 1, "feed-b", now=clock.now),
            _embedded("b3", 1, "feed-c", now=clock.now),
        ]
    )
    await generator.generate_clusters(hours_back=6)

    active = await generator.get_active_clusters()
    assert [c.relevance_score for c in active] == [9.0, 4.0]
    assert len(await generator.get_active_clusters(limit=1)) == 1

    clock.advance(hours=25)
    assert await generator.expire_old_clusters() == 1
    assert [c.relevance_score for c in await generator.get_active_clusters()] == [9.0]


@pytest.mark.asyncio
async def test_find_similar_articles(storage, clock):
    await storage.upsert_articles(
        [
            _embedded("src", 0, "feed-a"),
            _embedded("near", 0, "feed-b"),
            _embedded("far", 1, "feed-c"),
            make_article("bare", feed="feed-d"),
        ]
    )
    generator = _generator(storage, clock)

    similar = await generator.find_similar_articles("src")

    assert [s.article_id for s in similar] == ["near"]
    assert similar[0].similarity_score > 0.75
    assert await generator.find_similar_articles("bare") == []
    assert await generator.find_similar_articles("unknown") == []


def test_member_cap_splits_large_group_newest_first():
    articles = [
        _embedded(f"e{i}", 7, "feed-a" if i % 2 else "feed-b", hours_ago=i) for i in range(1, 6)
    ]

    candidates = form_clusters(articles, ClusterSettings(max_members=3))

    assert [_ids(c) for c in candidates] == [["e1", "e2", "e3"], ["e4", "e5"]]


@pytest.mark.asyncio
async def test_zero_hours_back_is_an_empty_window(storage, clock):
    await storage.upsert_articles([_embedded("a1", 0, "feed-a"), _embedded("a2", 0, "feed-b")])
    provider = FakeClusteringProvider()

    result = await _generator(storage, clock, provider).generate_clusters(hours_back=0)

    assert result.clusters == []
    assert result.articles_processed == 0
    assert provider.label_calls == 0


@pytest.mark.asyncio
async def test_label_failure_on_one_candidate_keeps_the_others(storage, clock):
    await storage.upsert_articles(
        [
            _embedded("a1", 0, "feed-a"),
            _embedded("a2", 0, "feed-b"),
            _embedded("b1", 1, "feed-a", hours_ago=2),
            _embedded("b2", 1, "feed-c", hours_ago=2),
            _embedded("c1", 2, "feed-b", hours_ago=3),
            _embedded("c2", 2, "feed-c", hours_ago=3),
        ]
    )
    provider = FakeClusteringProvider(failing_label_calls={2})

    result = await _generator(storage, clock, provider).generate_clusters()

    assert provider.label_calls == 3
    assert result.clusters_created == 2
    assert set(storage.clusters) == {c.id for c in result.clusters}
    assert sorted(sorted(c.article_ids) for c in result.clusters) == [["a1", "a2"], ["c1", "c2"]]


@pytest.mark.asyncio
@respx.mock
async def test_malformed_label_body_falls_back_without_losing_clusters(storage, clock):
    await storage.upsert_articles(
        [
            _embedded("a1", 0, "feed-a", title="Harbour workers strike"),
            _embedded("a2", 0, "feed-b", hours_ago=1.5, title="Port strike spreads"),
            _embedded("b1", 1, "feed-a", hours_ago=2, title="Comet visible tonight"),
            _embedded("b2", 1, "feed-c", hours_ago=2.5, title="Comet over the city"),
        ]
    )
    respx.post(f"{LLM_API_BASE}/chat/completions").mock(
        side_effect=[
            Response(
                200,
                json={"choices": [{"message": {"content": "TOPIC: Port strike\nSUMMARY: Docks shut."}}]},
            ),
            Response(200, json={"choices": []}),
        ]
    )
    provider = ClusteringProvider(api_key="gsk-test", limiter=AsyncLimiter(1000, 1))

    result = await _generator(storage, clock, provider).generate_clusters()

    assert result.clusters_created == 2
    topics = {c.article_ids[0]: c.topic for c in result.clusters}
    assert topics == {"a1": "Port strike", "b1": "Comet visible tonight"}
