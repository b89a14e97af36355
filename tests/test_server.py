"""Tests for the FastMCP tool surface, response envelopes and usage tracking."""

import json
import signal
from typing import Any, Iterator
from unittest.mock import AsyncMock, patch

import pytest

import server
from budgetbakers_mcp.config import Settings
from budgetbakers_mcp.errors import LoginRejected, ValidationError
from budgetbakers_mcp.service import BudgetBakersService

from conftest import FakeDocumentStore, FakeStoreFactory, StubEngine

EXPECTED_TOOLS = {
    "login", "get_session_status", "get_usage_analytics",
    "list_accounts", "get_account", "create_account", "update_account", "delete_account",
    "list_records", "get_record", "create_record", "update_record", "delete_record",
    "list_categories", "get_category", "create_category", "update_category", "delete_category",
    "list_labels", "get_label", "create_label", "update_label", "delete_label",
}


@pytest.fixture
def fake_store() -> FakeDocumentStore:
    return FakeDocumentStore()


@pytest.fixture
def stub_engine() -> StubEngine:
    return StubEngine()


@pytest.fixture
def services(fake_store: FakeDocumentStore, stub_engine: StubEngine) -> Iterator[BudgetBakersService]:
    settings = Settings(email="user@example.com", password="secret")
    service = BudgetBakersService(
        settings, engine=stub_engine, store_factory=FakeStoreFactory(fake_store),  # type: ignore[arg-type]
    )
    with patch.object(server, "services", service):
        yield service


class TestServerInstance:
    def test_server_instance_creation(self) -> None:
        assert server.mcp is not None
        assert server.mcp.name == "budgetbakers"

    @pytest.mark.asyncio
    async def test_all_tools_registered(self) -> None:
        tools = await server.mcp.list_tools()

        assert {tool.name for tool in tools} == EXPECTED_TOOLS

    @patch.dict('os.environ', {"BUDGETBAKERS_API_URL": "http://localhost:3000"}, clear=True)
    def test_services_built_lazily_from_environment(self) -> None:
        with patch.object(server, "services", None):
            service = server.get_services()

            assert service.settings.api_url == "http://localhost:3000"
            assert server.get_services() is service


class TestEnvelopes:
    def test_success_envelope(self) -> None:
        payload = json.loads(server.format_success("Done", {"a": 1}))
        assert payload == {"success": True, "message": "Done", "data": {"a": 1}}

    def test_error_envelope(self) -> None:
        payload = json.loads(server.format_error("Account not found", "No account with id 'x'"))
        assert payload == {
            "success": False,
            "error": {"message": "Account not found", "details": "No account with id 'x'"},
        }


class TestEntityTools:
    @pytest.mark.asyncio
    async def test_account_lifecycle(self, services: BudgetBakersService) -> None:
        created = json.loads(await server.create_account({"name": "Cash", "currencyId": "EUR"}))
        account_id = created["data"]["_id"]

        listed = json.loads(await server.list_accounts(name_starts_with="ca"))
        fetched = json.loads(await server.get_account(account_id))
        updated = json.loads(await server.update_account(account_id, {"color": "#00FF00"}))
        deleted = json.loads(await server.delete_account(account_id))
        missing = json.loads(await server.get_account(account_id))

        assert created["success"] and created["message"] == "Account created successfully"
        assert [doc["_id"] for doc in listed["data"]] == [account_id]
        assert fetched["data"]["name"] == "Cash"
        assert updated["data"]["color"] == "#00FF00"
        assert deleted["data"]["success"] is True
        assert deleted["data"]["id"] == account_id
        assert missing == {
            "success": False,
            "error": {"message": "Account not found", "details": f"No account with id '{account_id}'"},
        }

    @pytest.mark.asyncio
    async def test_update_and_delete_missing(self, services: BudgetBakersService) -> None:
        updated = json.loads(await server.update_label("HashTag_missing", {"name": "x"}))
        deleted = json.loads(await server.delete_record("Record_missing"))

        assert updated["success"] is False
        assert deleted["error"]["message"] == "Record not found"

    @pytest.mark.asyncio
    async def test_record_filters_passed_through(self, services: BudgetBakersService) -> None:
        base = {"accountId": "Account_1", "categoryId": "Category_1", "currencyId": "EUR", "amount": -500}
        await server.create_record({**base, "recordDate": "2025-01-10"})
        await server.create_record({**base, "recordDate": "2025-03-10"})

        result = json.loads(await server.list_records(date_from="2025-02-01"))

        assert [doc["recordDate"][:10] for doc in result["data"]] == ["2025-03-10"]

    @pytest.mark.asyncio
    async def test_category_rule_violation_raises(self, services: BudgetBakersService) -> None:
        with pytest.raises(ValidationError, match="envelope"):
            await server.create_category({"name": "X", "envelopeId": 1001})

        created = json.loads(await server.create_category({"name": "X", "envelopeId": 3001}))
        assert created["success"]

        categories = json.loads(await server.list_categories(envelope_id=3001))
        assert len(categories["data"]) == 1


class TestSessionTools:
    @pytest.mark.asyncio
    async def test_login_returns_cookies(self, services: BudgetBakersService, stub_engine: StubEngine) -> None:
        result = json.loads(await server.login("other@example.com", "hunter2"))

        assert result["success"]
        names = {cookie["name"] for cookie in result["data"]}
        assert names == {"__Secure-next-auth.session-token", "__Host-next-auth.csrf-token"}
        assert stub_engine.calls[0].email == "other@example.com"

    @pytest.mark.asyncio
    async def test_login_failure_propagates(self, services: BudgetBakersService, stub_engine: StubEngine) -> None:
        stub_engine.outcomes = [LoginRejected(401, "CredentialsSignin")]

        with pytest.raises(LoginRejected):
            await server.login("other@example.com", "wrong")

    @pytest.mark.asyncio
    async def test_login_requires_credentials(self, services: BudgetBakersService, stub_engine: StubEngine) -> None:
        with pytest.raises(ValidationError) as exc_info:
            await server.login("", "secret")

        assert exc_info.value.field == "email"
        assert stub_engine.calls == []

    @pytest.mark.asyncio
    async def test_session_status_never_authenticates(self, services: BudgetBakersService, stub_engine: StubEngine) -> None:
        before = json.loads(await server.get_session_status())
        await server.list_labels()
        after = json.loads(await server.get_session_status())

        assert before["data"]["state"] == "not_initialized"
        assert before["data"]["cached"] is False
        assert after["data"]["state"] == "authenticated"
        assert after["data"]["db_name"] == "bb-user-db"
        assert "token" not in after["data"]
        assert len(stub_engine.calls) == 1


class TestUsageAnalytics:
    @pytest.mark.asyncio
    async def test_track_usage_records_calls(self, services: BudgetBakersService) -> None:
        server.usage_patterns.clear()

        await server.list_accounts()

        assert len(server.usage_patterns["list_accounts"]) == 1
        call_info = server.usage_patterns["list_accounts"][0]
        assert call_info["tool_name"] == "list_accounts"
        assert call_info["status"] == "success"
        assert "execution_time" in call_info
        assert call_info["session_id"] == server.current_session_id

    @pytest.mark.asyncio
    async def test_password_redacted(self, services: BudgetBakersService) -> None:
        server.usage_patterns.clear()

        await server.login(email="user@example.com", password="secret")

        call_info = server.usage_patterns["login"][0]
        assert call_info["kwargs"] == {"email": "user@example.com"}

    @pytest.mark.asyncio
    async def test_errors_tracked(self, services: BudgetBakersService) -> None:
        server.usage_patterns.clear()

        with pytest.raises(ValidationError):
            await server.create_account({"name": "No currency"})

        call_info = server.usage_patterns["create_account"][0]
        assert call_info["status"] == "error"
        assert "currencyId" in call_info["error"]

    @pytest.mark.asyncio
    async def test_get_usage_analytics(self) -> None:
        server.usage_patterns.clear()
        server.usage_patterns["list_accounts"] = [
            {"tool_name": "list_accounts", "timestamp": 1000, "status": "success", "execution_time": 0.5},
            {"tool_name": "list_accounts", "timestamp": 1001, "status": "success", "execution_time": 0.3},
        ]
        server.usage_patterns["list_records"] = [
            {"tool_name": "list_records", "timestamp": 1002, "status": "error",
             "execution_time": 1.2, "error": "boom"},
        ]

        analytics = json.loads(await server.get_usage_analytics())

        assert analytics["session_id"] == server.current_session_id
        assert analytics["total_tools_called"] == 3
        assert analytics["tools_usage_frequency"] == {"list_accounts": 2, "list_records": 1}
        perf = analytics["performance_metrics"]
        assert perf["max_execution_time"] == 1.2
        assert perf["avg_execution_time"] == pytest.approx(2.0 / 3)
        assert perf["error_count"] == 1
        assert analytics["recent_errors"] == [{"tool_name": "list_records", "error": "boom"}]


class TestMain:
    @pytest.mark.asyncio
    async def test_main_closes_services(self, services: BudgetBakersService) -> None:
        with patch.object(server.mcp, "run_stdio_async", AsyncMock(side_effect=BrokenPipeError())), \
                patch.object(services, "aclose", AsyncMock()) as aclose:
            await server.main()

        aclose.assert_awaited_once()


class TestSignalHandling:
    @pytest.fixture
    def restore_signals(self) -> Iterator[None]:
        previous = {sig: signal.getsignal(sig) for sig in (signal.SIGINT, signal.SIGTERM)}
        yield
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    def test_ctrl_c_interrupts(self, restore_signals: None) -> None:
        server.install_signal_handlers()

        assert signal.getsignal(signal.SIGINT) is signal.default_int_handler

    def test_sigterm_interrupts(self, restore_signals: None) -> None:
        server.install_signal_handlers()
        handler = signal.getsignal(signal.SIGTERM)

        assert callable(handler)
        with pytest.raises(KeyboardInterrupt):
            handler(signal.SIGTERM, None)

    def test_run_exits_quietly_on_interrupt(self, restore_signals: None) -> None:
        def interrupted(coro: Any) -> None:
            coro.close()
            raise KeyboardInterrupt

        with patch.object(server.asyncio, "run", side_effect=interrupted):
            server.run()
