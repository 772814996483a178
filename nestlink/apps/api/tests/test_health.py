"""Tests for health endpoints and RFC 9457 error rendering."""

from fastapi.testclient import TestClient
from postgrest.exceptions import APIError

from conftest import FakeSupabase
from nestlink_api.config.tables import Tables
from nestlink_api.routers.health import API_VERSION


def test_health_always_200(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "healthy"
    assert data["version"] == API_VERSION
    assert data["services"]["redis"] == "up"
    assert data["services"]["supabase"] == "down: not configured"


def test_readyz_503_when_supabase_missing(client: TestClient) -> None:
    response = client.get("/readyz")
    assert response.status_code == 503
    assert response.json()["status"] == "not_ready"


def test_readyz_ready(client: TestClient, app) -> None:
    app.state.supabase = FakeSupabase()
    app.state.tables = Tables()

    response = client.get("/readyz")

    assert response.status_code == 200
    assert response.json()["services"] == {"api": "up", "supabase": "up", "redis": "up"}


def test_readyz_reports_supabase_error(client: TestClient, app) -> None:
    supabase = FakeSupabase()
    tables = Tables()
    supabase.responses[tables.access_requests] = APIError({"message": "JWT expired"})
    app.state.supabase = supabase
    app.state.tables = tables

    response = client.get("/readyz")

    assert response.status_code == 503
    assert response.json()["services"]["supabase"].startswith("down:")


def test_unknown_route_is_problem_json(client: TestClient) -> None:
    response = client.get("/api/does-not-exist", headers={"X-Request-ID": "req-404"})

    assert response.status_code == 404
    assert response.headers["content-type"] == "application/problem+json"
    problem = response.json()
    assert problem["status"] == 404
    assert problem["title"] == "Not Found"
    assert problem["instance"] == "urn:nestlink:trace:req-404"


def test_request_id_generated_when_absent(client: TestClient) -> None:
    response = client.get("/health")
    assert response.headers["X-Request-ID"]
