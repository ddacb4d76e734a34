import pytest
from httpx import AsyncClient

BASE = "/validated-queries/meta/filters"


@pytest.mark.asyncio
async def test_list_dimensions(client: AsyncClient, auth_headers_user, region_dimension):
    response = await client.get(BASE, headers=auth_headers_user)

    assert response.status_code == 200
    data = response.json()
    assert len(data) == 1
    assert data[0]["sql_param"] == "region"
    assert data[0]["control"] == "select"


@pytest.mark.asyncio
async def test_options(client: AsyncClient, auth_headers_user, region_dimension):
    response = await client.get(f"{BASE}/region/options", headers=auth_headers_user)

    assert response.status_code == 200
    assert response.json() == [{"name": "Alex"}, {"name": "Cairo"}, {"name": "Giza"}]


@pytest.mark.asyncio
async def test_options_unknown_param(client: AsyncClient, auth_headers_user):
    response = await client.get(f"{BASE}/nope/options", headers=auth_headers_user)

    assert response.status_code == 200
    assert response.json() == []


@pytest.mark.asyncio
async def test_dimension_crud(client: AsyncClient, auth_headers_admin, auth_headers_user):
    payload = {
        "label": "Tier",
        "sql_param": "tier",
        "control": "multiselect",
        "values_sql": "SELECT DISTINCT status AS tier FROM deliveries ORDER BY tier",
    }
    created = await client.post(BASE, json=payload, headers=auth_headers_admin)
    assert created.status_code == 201
    dimension_id = created.json()["id"]
    assert created.json()["is_active"] is True

    duplicate = await client.post(BASE, json=payload, headers=auth_headers_admin)
    assert duplicate.status_code == 409

    options = await client.get(f"{BASE}/tier/options", headers=auth_headers_user)
    assert options.json() == [{"tier": "delivered"}, {"tier": "failed"}]

    updated = await client.put(
        f"{BASE}/{dimension_id}",
        json={"values_sql": "SELECT 'gold' AS tier"},
        headers=auth_headers_admin,
    )
    assert updated.status_code == 200
    # Changing the enumeration query drops the cached options
    options = await client.get(f"{BASE}/tier/options", headers=auth_headers_user)
    assert options.json() == [{"tier": "gold"}]

    removed = await client.delete(f"{BASE}/{dimension_id}", headers=auth_headers_admin)
    assert removed.status_code == 200
    assert removed.json()["is_active"] is False

    listed = await client.get(BASE, headers=auth_headers_user)
    assert listed.json() == []


@pytest.mark.asyncio
async def test_dimension_invalid_param_name(client: AsyncClient, auth_headers_admin):
    payload = {"label": "Bad", "sql_param": "region; DROP", "control": "text"}
    response = await client.post(BASE, json=payload, headers=auth_headers_admin)

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_update_unknown_dimension(client: AsyncClient, auth_headers_admin):
    response = await client.put(
        f"{BASE}/missing", json={"label": "X"}, headers=auth_headers_admin
    )
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_update_rejects_null_but_clears_values_sql(
    client: AsyncClient, auth_headers_admin, region_dimension
):
    url = f"{BASE}/{region_dimension.id}"
    for field in ("label", "sql_param", "control", "is_active"):
        response = await client.put(url, json={field: None}, headers=auth_headers_admin)
        assert response.status_code == 422

    cleared = await client.put(url, json={"values_sql": None}, headers=auth_headers_admin)
    assert cleared.status_code == 200
    assert cleared.json()["values_sql"] is None


@pytest.mark.asyncio
async def test_rename_onto_active_param_conflicts(
    client: AsyncClient, auth_headers_admin, auth_headers_user, region_dimension
):
    region_id = region_dimension.id
    created = await client.post(
        BASE,
        json={"label": "Tier", "sql_param": "tier", "control": "select"},
        headers=auth_headers_admin,
    )
    tier_id = created.json()["id"]

    renamed = await client.put(
        f"{BASE}/{tier_id}", json={"sql_param": "region"}, headers=auth_headers_admin
    )
    assert renamed.status_code == 409

    listed = await client.get(BASE, headers=auth_headers_user)
    assert sorted(d["sql_param"] for d in listed.json()) == ["region", "tier"]

    # Once the old holder is gone the name is free again
    await client.delete(f"{BASE}/{region_id}", headers=auth_headers_admin)
    moved = await client.put(
        f"{BASE}/{tier_id}", json={"sql_param": "region"}, headers=auth_headers_admin
    )
    assert moved.status_code == 200
    assert moved.json()["sql_param"] == "region"


@pytest.mark.asyncio
async def test_warmup_and_invalidate(
    client: AsyncClient, auth_headers_admin, redis_client, region_dimension
):
    warm = await client.post(f"{BASE}/cache/warmup", headers=auth_headers_admin)

    assert warm.status_code == 200
    assert warm.json()["warmed"] == ["region"]
    assert warm.json()["failed"] == []
    assert await redis_client.exists("filter_options:region") == 1

    single = await client.delete(f"{BASE}/cache/region", headers=auth_headers_admin)
    assert single.status_code == 200
    assert await redis_client.exists("filter_options:region") == 0

    await client.post(f"{BASE}/cache/warmup", headers=auth_headers_admin)
    everything = await client.delete(f"{BASE}/cache", headers=auth_headers_admin)
    assert everything.status_code == 200
    assert await redis_client.keys("filter_options:*") == []


@pytest.mark.asyncio
async def test_cache_routes_are_admin_only(client: AsyncClient, auth_headers_user):
    warm = await client.post(f"{BASE}/cache/warmup", headers=auth_headers_user)
    clear = await client.delete(f"{BASE}/cache", headers=auth_headers_user)
    create = await client.post(
        BASE,
        json={"label": "Tier", "sql_param": "tier", "control": "select"},
        headers=auth_headers_user,
    )

    assert warm.status_code == 403
    assert clear.status_code == 403
    assert create.status_code == 403
