import pytest
from helpers import FakeClusteringProvider, FakeEmbeddingProvider, make_article, topic_vector
from fastapi.testclient import TestClient

from trending.clustering import ClusterGenerator
from trending.config import PipelineSettings
from trending.errors import StorageFailure
from trending.main import app
from trending.queue import EmbeddingQueueManager
from trending.scheduler import Orchestrator
from trending.storage import InMemoryStorage


class OfflineStorage(InMemoryStorage):
    async def ping(self):
        raise StorageFailure("database is down")


@pytest.fixture
def wire(clock):
    def _wire(storage=None, secret="s3cret", embedder=None):
        storage = storage if storage is not None else InMemoryStorage()
        queue = EmbeddingQueueManager(storage, embedder or FakeEmbeddingProvider(), clock=clock)
        generator = ClusterGenerator(storage, FakeClusteringProvider(), clock=clock)
        app.state.settings = PipelineSettings(ai_jobs_secret=secret)
        app.state.orchestrator = Orchestrator(storage, queue, generator, clock=clock)
        return storage

    yield _wire
    app.state.settings = None
    app.state.orchestrator = None


@pytest.fixture
def client():
    return TestClient(app)


def test_run_ai_jobs_rejects_bad_secret(wire, client):
    wire()
    assert client.get("/run-ai-jobs").status_code == 401
    resp = client.post("/run-ai-jobs?secret=wrong")
    assert resp.status_code == 401
    assert resp.json() == {"error": "Unauthorized"}


def test_run_ai_jobs_success_envelope(wire, client):
    storage = wire()
    storage.articles["a1"] = make_article("a1", feed="feed-a")
    storage.articles["a2"] = make_article("a2", feed="feed-b")
    client.post("/queue/enqueue?secret=s3cret", json={"article_ids": ["a1", "a2"]})

    resp = client.post("/run-ai-jobs?secret=s3cret")

    assert resp.status_code == 200
    body = resp.json()
    assert body["success"] is True
    assert "timestamp" in body
    assert body["results"]["embeddings"]["succeeded"] == 2
    assert body["results"]["errors"] == []


def test_run_ai_jobs_without_configured_secret(wire, client):
    wire(secret=None)
    assert client.get("/run-ai-jobs").status_code == 200


def test_run_ai_jobs_storage_outage_returns_500(wire, client):
    wire(storage=OfflineStorage())

    resp = client.get("/run-ai-jobs", params={"secret": "s3cret"})

    assert resp.status_code == 500
    body = resp.json()
    assert body["success"] is False
    assert body["error"] == "Storage unavailable: database is down"


def test_health_reports_services(wire, client):
    wire(embedder=FakeEmbeddingProvider(configured=False))
    assert client.get("/health").json() == {
        "status": "ok",
        "storage": True,
        "services": {"embeddings": False, "clustering": True},
    }

    wire(storage=OfflineStorage())
    body = client.get("/health").json()
    assert body["status"] == "degraded"
    assert body["storage"] is False


def test_clusters_and_similar_articles(wire, client):
    storage = wire()
    for aid, feed in (("a1", "feed-a"), ("a2", "feed-b")):
        storage.articles[aid] = make_article(aid, feed=feed, embedding=topic_vector(0, jitter=ord(feed[-1])))
    client.post("/run-ai-jobs?secret=s3cret")

    clusters = client.get("/clusters").json()["clusters"]
    assert len(clusters) == 1
    assert sorted(clusters[0]["articleIds"]) == ["a1", "a2"]
    assert clusters[0]["relevanceScore"] == 4.0
    assert client.get("/clusters?limit=0").status_code == 422

    similar = client.get("/articles/a1/similar").json()
    assert similar["articleId"] == "a1"
    assert [s["articleId"] for s in similar["similar"]] == ["a2"]


def test_queue_endpoints(wire, client):
    storage = wire()
    storage.articles["a1"] = make_article("a1")

    assert client.post("/queue/enqueue", json={"article_ids": ["a1"]}).status_code == 401
    assert client.post("/queue/enqueue?secret=s3cret", json={"article_ids": []}).status_code == 422

    resp = client.post("/queue/enqueue?secret=s3cret", json={"article_ids": ["a1"], "priority": 3})
    assert resp.json() == {"queued": 1, "requested": 1}

    stats = client.get("/queue/stats").json()
    assert stats["queue"] == {"pending": 1, "processing": 0, "failed": 0}
    assert stats["scheduler"]["runs"] == 0
