"""Tests for health, exchange account and strategy catalog endpoints."""

import pytest


@pytest.mark.asyncio
async def test_health_check(client):
    """Test health endpoint returns OK."""
    response = await client.get("/api/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["service"] == "botengine"


@pytest.mark.asyncio
async def test_root(client):
    """Test root endpoint points at the docs."""
    response = await client.get("/")
    assert response.status_code == 200
    assert response.json()["docs"] == "/docs"


# ============================================================================
# Exchange Accounts
# ============================================================================


@pytest.mark.asyncio
async def test_create_simulated_account(client):
    """Test creating a paper trading account."""
    response = await client.post("/api/exchange-accounts", json={"name": "Paper", "initial_balance": 5000})
    assert response.status_code == 201
    data = response.json()
    assert data["is_simulated"] is True
    assert data["initial_balance"] == 5000
    assert "api_key" not in data
    assert "api_secret" not in data


@pytest.mark.asyncio
async def test_live_account_needs_credentials(client):
    """Test that a live account without credentials is rejected."""
    response = await client.post("/api/exchange-accounts", json={"name": "Live", "is_simulated": False})
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_list_accounts(client):
    """Test listing exchange accounts in creation order."""
    await client.post("/api/exchange-accounts", json={"name": "A"})
    await client.post(
        "/api/exchange-accounts",
        json={"name": "B", "is_simulated": False, "api_key": "key", "api_secret": "secret", "sandbox": True},
    )

    response = await client.get("/api/exchange-accounts")
    assert response.status_code == 200
    assert [a["name"] for a in response.json()] == ["A", "B"]


# ============================================================================
# Strategy Catalog
# ============================================================================


@pytest.mark.asyncio
async def test_list_strategies(client):
    """Test that every strategy is listed with its defaults."""
    response = await client.get("/api/strategies")
    assert response.status_code == 200
    data = response.json()
    assert len(data) == 8
    grid = next(s for s in data if s["type"] == "grid")
    assert grid["description"].startswith("Grid Trading")
    assert grid["default_config"]["gridLevels"] == 10


@pytest.mark.asyncio
async def test_get_strategy_by_alias(client):
    """Test that an alias resolves to the canonical strategy."""
    response = await client.get("/api/strategies/dollar-cost-averaging")
    assert response.status_code == 200
    assert response.json()["type"] == "dca"


@pytest.mark.asyncio
async def test_get_unknown_strategy(client):
    """Test that an unknown strategy is not found."""
    response = await client.get("/api/strategies/martingale")
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_default_config(client):
    """Test fetching default parameters."""
    response = await client.get("/api/strategies/mean-reversion/default-config")
    assert response.status_code == 200
    assert response.json()["period"] == 20


@pytest.mark.asyncio
async def test_validate_config(client):
    """Test validating strategy parameters."""
    response = await client.post(
        "/api/strategies/grid/validate",
        json={"upperPrice": 40000, "lowerPrice": 50000, "gridLevels": 10, "orderAmount": 0.1},
    )
    assert response.status_code == 200
    data = response.json()
    assert data["valid"] is False
    assert "Upper price must be greater than lower price" in data["errors"]

    response = await client.get("/api/strategies/grid/default-config")
    response = await client.post("/api/strategies/grid/validate", json=response.json())
    assert response.json() == {"valid": True, "errors": []}


@pytest.mark.asyncio
async def test_validate_unknown_strategy(client):
    """Test that validating an unknown strategy reports it as invalid."""
    response = await client.post("/api/strategies/martingale/validate", json={})
    assert response.status_code == 200
    assert response.json()["valid"] is False
