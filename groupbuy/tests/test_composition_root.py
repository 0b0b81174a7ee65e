"""Integration tests for the composition root.

These tests verify that configuration loads and validates, that
build_application wires real adapters into the core services, and that
the interactive CLI loop parses and dispatches commands.
"""

import json
import os
from pathlib import Path
from unittest.mock import patch

import pytest

from groupbuy.adapters.cli.commands import CLICommandHandler
from groupbuy.adapters.notification.http_relay import HTTPRelayNotificationAdapter
from groupbuy.adapters.notification.stdout import StdoutNotificationAdapter
from groupbuy.adapters.store.sqlite import SQLiteGroupOrderStore, SQLiteSettledOrderStore
from groupbuy.config import Settings, load_settings
from groupbuy.core.checkout import DEFAULT_COD_MEMBER_LIMIT
from groupbuy.core.models import GroupState
from groupbuy.main import _run_cli_interactive, build_application
from groupbuy.tests.fakes import FakeSweepPort, build_harness


class TestConfigurationLoading:
    """Test configuration loading and validation."""

    def test_load_settings_with_defaults(self) -> None:
        settings = load_settings()

        assert settings.store_backend == "sqlite"
        assert settings.notification_backend == "stdout"
        assert settings.run_mode == "daemon"
        assert settings.sweep_interval_seconds == 60
        assert settings.payment_window_minutes == 1440
        assert settings.cod_member_limit == DEFAULT_COD_MEMBER_LIMIT

    def test_load_settings_from_env(self) -> None:
        with patch.dict(
            os.environ,
            {
                "CATALOG_API_URL": "http://catalog.internal",
                "SWEEP_INTERVAL_SECONDS": "15",
                "RUN_MODE": "webhook",
                "COD_MEMBER_LIMIT": "8",
            },
        ):
            settings = load_settings()

        assert settings.catalog_api_url == "http://catalog.internal"
        assert settings.sweep_interval_seconds == 15
        assert settings.run_mode == "webhook"
        assert settings.cod_member_limit == 8

    @pytest.mark.parametrize(
        "name, value",
        [
            ("SWEEP_INTERVAL_SECONDS", "0"),
            ("PAYMENT_WINDOW_MINUTES", "-5"),
            ("COD_MEMBER_LIMIT", "1"),
            ("COMMERCE_TIMEOUT_SECONDS", "0"),
            ("WEBHOOK_PORT", "70000"),
            ("STORE_BACKEND", "mongodb"),
        ],
    )
    def test_invalid_values_rejected(self, name: str, value: str) -> None:
        with patch.dict(os.environ, {name: value}):
            with pytest.raises(Exception):  # ValidationError
                load_settings()


class TestBuildApplication:
    """Test that build_application wires adapters into the core."""

    async def test_sqlite_and_stdout(self, tmp_path: Path) -> None:
        settings = Settings(store_sqlite_path=str(tmp_path / "app.db"))
        app = build_application(settings)
        try:
            assert isinstance(app.groups, SQLiteGroupOrderStore)
            assert isinstance(app.orders, SQLiteSettledOrderStore)
            assert isinstance(app.notification, StdoutNotificationAdapter)

            group = await app.service.create_group("host", "store-1", "Office snacks")
            loaded = await app.groups.get_by_id(group.id)

            assert loaded is not None
            assert loaded.state == GroupState.OPEN
            assert app.service.invite_link(group).startswith("http://localhost:3000/group/")
        finally:
            await app.close()

    async def test_http_relay_notification(self, tmp_path: Path) -> None:
        settings = Settings(
            store_sqlite_path=str(tmp_path / "app.db"),
            notification_backend="http",
            realtime_relay_url="http://relay.internal",
        )
        app = build_application(settings)
        try:
            assert isinstance(app.notification, HTTPRelayNotificationAdapter)
            assert app.notification.close in app.closers
        finally:
            await app.close()

    async def test_sweep_on_empty_store(self, tmp_path: Path) -> None:
        app = build_application(Settings(store_sqlite_path=str(tmp_path / "app.db")))
        try:
            result = await app.expiry.execute_sweep()
        finally:
            await app.close()

        assert result.groups_examined == 0


class TestInteractiveCLILoop:
    """Test suite for the interactive CLI loop."""

    async def test_reads_and_executes_commands(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        handler = CLICommandHandler(build_harness().service, FakeSweepPort())
        commands = [
            'create {"host_user_id": "host", "store_id": "s1", "name": "Lunch"}',
            "exit",
        ]

        with patch("builtins.input", side_effect=commands):
            await _run_cli_interactive(handler)

        output = json.loads(capsys.readouterr().out)
        assert output["status"] == "success"
        assert output["group"]["name"] == "Lunch"

    async def test_handles_bad_json_and_unknown_commands(
        self, capsys: pytest.CaptureFixture[str]
    ) -> None:
        handler = CLICommandHandler(build_harness().service, FakeSweepPort())
        commands = ["list not-valid-json", "explode {}", "exit"]

        with patch("builtins.input", side_effect=commands):
            await _run_cli_interactive(handler)

        output = capsys.readouterr().out
        assert "Unknown command: explode" in output

    async def test_help_lists_commands(self, capsys: pytest.CaptureFixture[str]) -> None:
        handler = CLICommandHandler(build_harness().service, FakeSweepPort())

        with patch("builtins.input", side_effect=["help", "exit"]):
            await _run_cli_interactive(handler)

        output = capsys.readouterr().out
        assert "checkout" in output
        assert "payment-result" in output

    async def test_handles_eof(self) -> None:
        handler = CLICommandHandler(build_harness().service, FakeSweepPort())

        def input_with_eof(_: str) -> str:
            raise EOFError()

        with patch("builtins.input", side_effect=input_with_eof):
            await _run_cli_interactive(handler)
