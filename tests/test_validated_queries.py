import pytest
from httpx import AsyncClient

from conftest import DELIVERIES_SQL

NEW_QUERY = {
    "name": "AMM_FAILED_DELIVERIES",
    "scope": "AMM",
    "sql_text": "SELECT COUNT(*) AS failed FROM deliveries WHERE status = :status",
    "chart_hint": "kpi",
    "validated_by": "admin-1",
}


@pytest.mark.asyncio
async def test_execute_q1_then_cached(client: AsyncClient, auth_headers_user, q1):
    """First call runs the query, the identical second call is served from cache"""
    payload = {"filters": {"region": "Cairo"}}

    first = await client.post(
        "/validated-queries/Q1/execute", json=payload, headers=auth_headers_user
    )
    second = await client.post(
        f"/validated-queries/{q1.id}/execute", json=payload, headers=auth_headers_user
    )

    assert first.status_code == 200
    body = first.json()
    assert body["data"] == [{"c": 2}]
    assert body["metadata"]["cached"] is False
    assert body["metadata"]["is_validated"] is True
    assert body["metadata"]["query_id"] == q1.id
    assert body["metadata"]["query_name"] == "Q1"
    assert body["metadata"]["chart_hint"] == "kpi"
    assert body["metadata"]["scope"] == "AM"
    assert body["metadata"]["filters_applied"]["region"] == "Cairo"
    assert body["metadata"]["filters_applied"]["start_date"]
    assert body["metadata"]["filters_applied"]["end_date"]

    assert second.status_code == 200
    assert second.json()["metadata"]["cached"] is True
    assert second.json()["data"] == body["data"]


@pytest.mark.asyncio
async def test_execute_unknown_query(client: AsyncClient, auth_headers_user):
    response = await client.post(
        "/validated-queries/NOPE/execute", json={}, headers=auth_headers_user
    )

    assert response.status_code == 404
    assert "not found" in response.json()["detail"]


@pytest.mark.asyncio
async def test_execute_analytical_query_falls_back(
    client: AsyncClient, auth_headers_user, deliveries_query, warehouse
):
    response = await client.post(
        f"/validated-queries/{deliveries_query.id}/execute",
        json={"filters": {"region": "Cairo,Giza"}},
        headers=auth_headers_user,
    )

    assert response.status_code == 200
    assert response.json()["data"] == [
        {"region": "Cairo", "orders": 1},
        {"region": "Giza", "orders": 1},
    ]
    assert warehouse.calls == 2


@pytest.mark.asyncio
async def test_execute_failure_is_500(
    client: AsyncClient, auth_headers_user, make_query
):
    await make_query(name="BROKEN", sql_text="SELECT * FROM missing_table")

    response = await client.post(
        "/validated-queries/BROKEN/execute", json={}, headers=auth_headers_user
    )

    assert response.status_code == 500


@pytest.mark.asyncio
async def test_requires_token(client: AsyncClient, q1):
    response = await client.get("/validated-queries")
    assert response.status_code == 401

    response = await client.get(
        "/validated-queries", headers={"Authorization": "Bearer garbage"}
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_list_and_get(client: AsyncClient, auth_headers_user, q1, make_query):
    await make_query(name="AMM_ONLY", scope="AMM")

    listed = await client.get("/validated-queries?scope=AM", headers=auth_headers_user)
    by_name = await client.get("/validated-queries/Q1", headers=auth_headers_user)
    missing = await client.get("/validated-queries/NOPE", headers=auth_headers_user)

    assert listed.status_code == 200
    assert [q["name"] for q in listed.json()] == ["Q1"]
    assert by_name.status_code == 200
    assert by_name.json()["id"] == q1.id
    assert by_name.json()["active"] is True
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_create_as_admin(client: AsyncClient, auth_headers_admin):
    response = await client.post(
        "/validated-queries", json=NEW_QUERY, headers=auth_headers_admin
    )

    assert response.status_code == 201
    data = response.json()
    assert data["name"] == NEW_QUERY["name"]
    assert data["status"] == "active"
    assert data["backend"] == "auto"
    assert "id" in data


@pytest.mark.asyncio
async def test_create_duplicate_name(client: AsyncClient, auth_headers_admin, q1):
    response = await client.post(
        "/validated-queries", json={**NEW_QUERY, "name": "Q1"}, headers=auth_headers_admin
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_create_invalid_data(client: AsyncClient, auth_headers_admin):
    response = await client.post(
        "/validated-queries",
        json={**NEW_QUERY, "scope": "EVERYONE"},
        headers=auth_headers_admin,
    )

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_admin_only_routes(client: AsyncClient, auth_headers_user, q1):
    """Regular users can read and execute but not author"""
    create = await client.post(
        "/validated-queries", json=NEW_QUERY, headers=auth_headers_user
    )
    update = await client.put(
        "/validated-queries/Q1", json={"chart_hint": "bar"}, headers=auth_headers_user
    )
    delete = await client.delete("/validated-queries/Q1", headers=auth_headers_user)
    test = await client.post(
        "/validated-queries/test", json={"sql": "SELECT 1"}, headers=auth_headers_user
    )
    materialize = await client.post(
        "/validated-queries/materialize", headers=auth_headers_user
    )

    for response in (create, update, delete, test, materialize):
        assert response.status_code == 403


@pytest.mark.asyncio
async def test_update_invalidates_cached_results(
    client: AsyncClient, auth_headers_user, auth_headers_admin, q1, deliveries_query
):
    url = "/validated-queries/{}/execute"
    await client.post(url.format("Q1"), json={}, headers=auth_headers_user)
    await client.post(url.format(deliveries_query.id), json={}, headers=auth_headers_user)

    update = await client.put(
        "/validated-queries/Q1",
        json={"sql_text": "SELECT COUNT(*) c FROM t WHERE region = 'Giza'"},
        headers=auth_headers_admin,
    )
    after = await client.post(url.format("Q1"), json={}, headers=auth_headers_user)
    other = await client.post(
        url.format(deliveries_query.id), json={}, headers=auth_headers_user
    )

    assert update.status_code == 200
    assert after.json()["metadata"]["cached"] is False
    assert after.json()["data"] == [{"c": 1}]
    assert other.json()["metadata"]["cached"] is True


@pytest.mark.asyncio
async def test_deactivate(client: AsyncClient, auth_headers_admin, auth_headers_user, q1):
    response = await client.delete("/validated-queries/Q1", headers=auth_headers_admin)

    assert response.status_code == 200
    assert response.json()["status"] == "deactivated"
    assert response.json()["active"] is False

    gone = await client.get("/validated-queries/Q1", headers=auth_headers_user)
    assert gone.status_code == 404

    edit = await client.put(
        f"/validated-queries/{q1.id}", json={"chart_hint": "bar"}, headers=auth_headers_admin
    )
    assert edit.status_code == 409


@pytest.mark.asyncio
async def test_invalid_transition(client: AsyncClient, auth_headers_admin, q1):
    response = await client.put(
        "/validated-queries/Q1", json={"status": "draft"}, headers=auth_headers_admin
    )

    assert response.status_code == 409


@pytest.mark.asyncio
async def test_update_unknown_query(client: AsyncClient, auth_headers_admin):
    response = await client.put(
        "/validated-queries/NOPE", json={"chart_hint": "bar"}, headers=auth_headers_admin
    )

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_rejects_null_fields(client: AsyncClient, auth_headers_admin, q1):
    for field in ("name", "sql_text", "scope", "status"):
        response = await client.put(
            "/validated-queries/Q1", json={field: None}, headers=auth_headers_admin
        )
        assert response.status_code == 422

    unchanged = await client.get("/validated-queries/Q1", headers=auth_headers_admin)
    assert unchanged.json()["name"] == "Q1"


@pytest.mark.asyncio
async def test_test_endpoint(client: AsyncClient, auth_headers_admin, redis_client):
    ok = await client.post(
        "/validated-queries/test",
        json={"sql": DELIVERIES_SQL, "filters": {"region": "Alex"}},
        headers=auth_headers_admin,
    )
    failed = await client.post(
        "/validated-queries/test",
        json={"sql": "SELECT * FROM missing_table"},
        headers=auth_headers_admin,
    )

    assert ok.status_code == 200
    assert ok.json()["success"] is True
    assert ok.json()["data"] == [{"region": "Alex", "orders": 1}]

    assert failed.status_code == 200
    assert failed.json()["success"] is False
    assert failed.json()["error"]

    assert await redis_client.keys("validated_query:*") == []


@pytest.mark.asyncio
async def test_materialize(client: AsyncClient, auth_headers_admin, q1, deliveries_query):
    response = await client.post(
        "/validated-queries/materialize", headers=auth_headers_admin
    )

    assert response.status_code == 200
    results = response.json()["results"]
    assert {r["query_name"] for r in results} == {"Q1", "AM_DELIVERIES_BY_REGION"}
    assert all(r["error"] is None for r in results)


@pytest.mark.asyncio
async def test_health(client: AsyncClient):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json() == {
        "status": "ok",
        "database": True,
        "cache": True,
        "warehouse": True,
    }
