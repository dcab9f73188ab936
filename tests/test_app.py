import json

import httpx
import pytest
import respx
from starlette.testclient import TestClient

from segmirror.app import RequestMetrics, create_app
from segmirror.models import HealthCheck, Segment, Sponsor

UPSTREAM = "https://upstream.example.com"
VIDEO_ID = "abcdefghijk"
VIDEO_HASH = "abcd0123456789"


def make_segment(uuid, start, end, votes=0, category="sponsor"):
    return Segment(
        uuid=uuid,
        action_type="skip",
        category=category,
        description="",
        locked=0,
        segment=(start, end),
        user_id="user",
        video_duration=300.0,
        votes=votes,
    )


class FakeStore:
    def __init__(self, sponsors=(), healthy=True):
        self.sponsors = list(sponsors)
        self.healthy = healthy
        self.calls = []

    def find_by_hash_prefix(self, prefix, categories):
        self.calls.append(("hash", prefix, list(categories)))
        if not categories:
            return []
        return [s for s in self.sponsors if s.hash.startswith(prefix)]

    def find_by_video_id(self, video_id, categories):
        self.calls.append(("id", video_id, list(categories)))
        if not categories:
            return []
        return [s for s in self.sponsors if s.video_id == video_id]

    def ping(self):
        if self.healthy:
            return HealthCheck("healthy", "Database connection successful", 1)
        return HealthCheck("unhealthy", "Database connection failed: down", 1)


@pytest.fixture
def sponsor():
    return Sponsor(
        hash=VIDEO_HASH,
        video_id=VIDEO_ID,
        segments=[make_segment("u1", 10.0, 20.0, 3), make_segment("u2", 50.0, 60.0, 1)],
    )


def client_for(store, upstream=None, namespace="api"):
    return TestClient(create_app(store, upstream, namespace))


def test_health_reports_healthy_database():
    response = client_for(FakeStore()).get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["checks"]["database"]["message"] == "Database connection successful"


def test_health_reports_unhealthy_database_with_503():
    response = client_for(FakeStore(healthy=False)).get("/health")
    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"
    assert response.json()["checks"]["database"]["status"] == "unhealthy"


def test_hash_prefix_with_bad_format_is_rejected():
    store = FakeStore()
    response = client_for(store).get("/api/skipSegments/xyz1")
    assert response.status_code == 400
    assert response.text == "Hash prefix does not match format requirements."
    assert store.calls == []


def test_hash_prefix_is_lowercased_and_default_category_used(sponsor):
    store = FakeStore([sponsor])
    response = client_for(store).get("/api/skipSegments/ABCD")
    assert response.status_code == 200
    assert store.calls == [("hash", "abcd", ["sponsor"])]
    assert response.json() == [sponsor.to_dict()]


def test_hash_prefix_passes_categories(sponsor):
    store = FakeStore([sponsor])
    categories = json.dumps(["sponsor", "intro"])
    client_for(store).get("/api/skipSegments/abcd", params={"categories": categories})
    assert store.calls == [("hash", "abcd", ["sponsor", "intro"])]


def test_invalid_categories_json_is_rejected():
    response = client_for(FakeStore()).get(
        "/api/skipSegments/abcd", params={"categories": "not json"}
    )
    assert response.status_code == 400


def test_video_id_is_required():
    response = client_for(FakeStore()).get("/api/skipSegments")
    assert response.status_code == 400
    assert response.text == "videoID parameter is required"


def test_video_id_with_bad_format_is_rejected():
    response = client_for(FakeStore()).get("/api/skipSegments", params={"videoID": "abc"})
    assert response.status_code == 400
    assert response.text == "videoID does not match format requirements"


def test_video_id_returns_segment_list_of_first_sponsor(sponsor):
    store = FakeStore([sponsor])
    response = client_for(store).get("/api/skipSegments", params={"videoID": VIDEO_ID})
    assert response.status_code == 200
    assert response.json() == [segment.to_dict() for segment in sponsor.segments]
    assert store.calls == [("id", VIDEO_ID, ["sponsor"])]


def test_hash_fallback_forwards_upstream_body():
    upstream_body = '[{"hash": "abcd", "videoID": "x", "segments": []}]'
    with respx.mock:
        route = respx.get(
            f"{UPSTREAM}/api/skipSegments/abcd", params={"categories": '["sponsor"]'}
        ).mock(return_value=httpx.Response(200, text=upstream_body))
        response = client_for(FakeStore(), UPSTREAM).get("/api/skipSegments/abcd")
        assert route.called
    assert response.status_code == 200
    assert response.text == upstream_body
    assert response.headers["content-type"].startswith("application/json")


def test_video_id_fallback_forwards_query():
    upstream_body = "[]"
    categories = '["intro"]'
    with respx.mock:
        route = respx.get(
            f"{UPSTREAM}/api/skipSegments",
            params={"videoID": VIDEO_ID, "categories": categories},
        ).mock(return_value=httpx.Response(200, text=upstream_body))
        response = client_for(FakeStore(), UPSTREAM).get(
            "/api/skipSegments", params={"videoID": VIDEO_ID, "categories": categories}
        )
        assert route.call_count == 1
    assert response.text == upstream_body


def test_upstream_failure_gives_bad_gateway():
    with respx.mock:
        respx.get(f"{UPSTREAM}/api/skipSegments/abcd").mock(
            side_effect=httpx.ConnectError("refused")
        )
        response = client_for(FakeStore(), UPSTREAM).get("/api/skipSegments/abcd")
    assert response.status_code == 502


def test_no_upstream_gives_empty_list():
    response = client_for(FakeStore()).get("/api/skipSegments/abcd")
    assert response.status_code == 200
    assert response.json() == []


def test_fake_is_user_vip():
    response = client_for(FakeStore()).get("/api/isUserVIP")
    assert response.json() == {"hashedUserID": "", "vip": False}


def test_fake_user_info():
    response = client_for(FakeStore()).get("/api/userInfo")
    assert response.json() == {
        "userID": "",
        "userName": "",
        "minutesSaved": 0,
        "segmentCount": 0,
        "viewCount": 0,
    }


def test_cors_preflight_allows_credentials():
    response = client_for(FakeStore()).options(
        "/api/userInfo",
        headers={
            "Origin": "http://localhost:3000",
            "Access-Control-Request-Method": "GET",
        },
    )
    assert response.status_code == 200
    assert response.headers["access-control-allow-credentials"] == "true"


def test_metrics_endpoint_counts_requests_by_route_template(sponsor):
    client = client_for(FakeStore([sponsor]))
    client.get("/health")
    client.get("/api/skipSegments/abcd")
    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'api_http_requests_total{endpoint="/health",method="GET",status="200"} 1' in response.text
    assert (
        'api_http_requests_total{endpoint="/api/skipSegments/{hash}",method="GET",status="200"} 1'
        in response.text
    )


def test_metrics_namespace_is_used():
    client = client_for(FakeStore(), namespace="mirror")
    client.get("/api/isUserVIP")
    text = client.get("/metrics").text
    assert "# TYPE mirror_http_requests_total counter" in text
    assert "api_http_requests_total" not in text


def test_request_metrics_histogram_is_cumulative():
    metrics = RequestMetrics()
    metrics.record("GET", "/health", 200, 0.3)
    metrics.record("GET", "/health", 200, 0.3)
    text = metrics.render("api")
    labels = 'endpoint="/health",method="GET",status="200"'
    assert f'api_http_requests_duration_seconds_bucket{{{labels},le="0.25"}} 0' in text
    assert f'api_http_requests_duration_seconds_bucket{{{labels},le="0.5"}} 2' in text
    assert f'api_http_requests_duration_seconds_bucket{{{labels},le="+Inf"}} 2' in text
    assert f"api_http_requests_duration_seconds_count{{{labels}}} 2" in text
    assert f"api_http_requests_total{{{labels}}} 2" in text


def test_request_metrics_escapes_label_values():
    metrics = RequestMetrics()
    metrics.record("GET", 'a"b', 404, 0.001)
    assert 'endpoint="a\\"b"' in metrics.render("api")


def test_openapi_document_describes_service():
    document = client_for(FakeStore()).get("/api-docs/openapi.json").json()
    assert document["info"]["title"] == "SponsorBlock Mirror API"
    assert "/api/skipSegments/{hash}" in document["paths"]