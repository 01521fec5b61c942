"""
Tests for the billing HTTP API.
"""

from collections.abc import AsyncGenerator
from decimal import Decimal

import pytest
import pytest_asyncio
from conftest import add_agent, add_call
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from callbilling.config import Settings
from callbilling.main import create_app, init_app_state
from callbilling.shared.database import DatabaseManager

USER = "user-1"


@pytest_asyncio.fixture
async def client(db: DatabaseManager, settings: Settings) -> AsyncGenerator[AsyncClient, None]:
    app = create_app()
    init_app_state(app, db, settings)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    await app.state.session_registry.stop_all()


class TestBillingApi:
    @pytest.mark.asyncio
    async def test_health(self, client: AsyncClient) -> None:
        response = await client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_balance_for_new_user(self, client: AsyncClient) -> None:
        response = await client.get(f"/api/billing/users/{USER}/balance")

        assert response.status_code == 200
        body = response.json()
        assert Decimal(body["current_balance"]) == 0
        assert body["balance_status"] == "empty"

    @pytest.mark.asyncio
    async def test_adjustment_then_transactions(self, client: AsyncClient) -> None:
        response = await client.post(
            f"/api/billing/users/{USER}/adjustments",
            json={"amount": "50", "reason": "manual top-up", "admin_id": "admin-1"},
        )
        assert response.status_code == 201
        assert Decimal(response.json()["balance_after"]) == Decimal("50")

        response = await client.get(f"/api/billing/users/{USER}/transactions", params={"limit": 10})
        assert response.status_code == 200
        [entry] = response.json()
        assert entry["transaction_type"] == "adjustment"
        assert entry["call_id_ref"] is None

    @pytest.mark.asyncio
    async def test_adjustment_without_reason_is_400(self, client: AsyncClient) -> None:
        response = await client.post(
            f"/api/billing/users/{USER}/adjustments",
            json={"amount": "5", "reason": " ", "admin_id": "admin-1"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "VALIDATION_ERROR"

    @pytest.mark.asyncio
    async def test_can_call(self, client: AsyncClient) -> None:
        await client.post(
            f"/api/billing/users/{USER}/adjustments",
            json={"amount": "1", "reason": "trial credit", "admin_id": "admin-1"},
        )

        ok = await client.post(f"/api/billing/users/{USER}/can-call", json={"estimated_cost": "0.50"})
        too_much = await client.post(f"/api/billing/users/{USER}/can-call", json={"estimated_cost": "5"})

        assert ok.json()["can_call"] is True
        assert too_much.json()["can_call"] is False

    @pytest.mark.asyncio
    async def test_process_call_bills_once(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await add_agent(session_factory, USER, "0.50", telephony_agent_id="tel-1", is_primary=True)
        await add_call(session_factory, "call-api", USER, duration_sec=90, agent_id="tel-1")
        await client.post(
            f"/api/billing/users/{USER}/adjustments",
            json={"amount": "10", "reason": "initial credit", "admin_id": "admin-1"},
        )

        first = await client.post(f"/api/billing/users/{USER}/calls/call-api/process")
        second = await client.post(f"/api/billing/users/{USER}/calls/call-api/process")

        assert first.status_code == 200
        assert first.json()["billed"] == ["call-api"]
        assert Decimal(first.json()["balance"]) == Decimal("9.25")
        assert second.json()["duplicates"] == ["call-api"]

    @pytest.mark.asyncio
    async def test_process_unknown_call_is_404(self, client: AsyncClient) -> None:
        response = await client.post(f"/api/billing/users/{USER}/calls/missing/process")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_process_call_without_agent_is_409(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await add_call(session_factory, "call-orphan", USER, duration_sec=30)

        response = await client.post(f"/api/billing/users/{USER}/calls/call-orphan/process")

        assert response.status_code == 409
        assert response.json()["code"] == "AGENT_UNRESOLVED"

    @pytest.mark.asyncio
    async def test_process_unfinished_call_is_409(
        self,
        client: AsyncClient,
        session_factory: async_sessionmaker[AsyncSession],
    ) -> None:
        await add_agent(session_factory, USER, "1.00", telephony_agent_id="tel-1", is_primary=True)
        await add_call(
            session_factory, "call-live", USER, duration_sec=30, agent_id="tel-1", call_status="in_progress"
        )
        await client.post(
            f"/api/billing/users/{USER}/adjustments",
            json={"amount": "10", "reason": "initial credit", "admin_id": "admin-1"},
        )

        response = await client.post(f"/api/billing/users/{USER}/calls/call-live/process")

        assert response.status_code == 409
        assert response.json()["code"] == "CALL_NOT_BILLABLE"
        balance = await client.get(f"/api/billing/users/{USER}/balance")
        assert Decimal(balance.json()["current_balance"]) == Decimal("10")

    @pytest.mark.asyncio
    async def test_session_lifecycle(self, client: AsyncClient) -> None:
        started = await client.post(f"/api/billing/users/{USER}/session")
        assert started.status_code == 200
        assert started.json()["running"] is True

        stopped = await client.delete(f"/api/billing/users/{USER}/session")
        assert stopped.status_code == 204

        missing = await client.delete(f"/api/billing/users/{USER}/session")
        assert missing.status_code == 404


@pytest.mark.asyncio
async def test_manual_and_session_processors_share_one_notifier(
    db: DatabaseManager, settings: Settings
) -> None:
    app = create_app()
    init_app_state(app, db, settings)
    registry = app.state.session_registry
    try:
        session = registry.start(USER)

        assert app.state.processor.notifier is app.state.notifier
        assert session.processor.notifier is app.state.notifier
    finally:
        await registry.stop_all()
