"""Tests for the opsrelay command line (notify, ask, check-config)."""

import asyncio
import json

import pytest
from click.testing import CliRunner

from opsrelay import cli as cli_module
from opsrelay.approval.callbacks import encode_callback_data
from opsrelay.cli import EXIT_CHOSEN, EXIT_DELIVERY_FAILED, EXIT_NO_DECISION, cli
from opsrelay.core.exceptions import ErrorCode, PermanentDeliveryError, RelayError
from opsrelay.relay import Relay


class FakeRuntime:
    """Stands in for TelegramRuntime; optionally presses a button once asked."""

    def __init__(self, relay, answer_index=None):
        self.relay = relay
        self.answer_index = answer_index
        self.started = False
        self._answer_task = None

    async def start(self):
        self.started = True
        await self.relay.start()
        if self.answer_index is not None:
            self._answer_task = asyncio.create_task(self._answer())

    async def _answer(self):
        transport = self.relay.transport
        while not transport.choices:
            await asyncio.sleep(0.005)
        choice = transport.choices[0]
        await self.relay.on_callback(
            encode_callback_data(choice["approval_id"], self.answer_index), transport.chat_id
        )

    async def shutdown(self):
        return await self.relay.shutdown()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def transport(transport_factory):
    return transport_factory()


@pytest.fixture
def patched(monkeypatch, settings, transport):
    """Route the CLI to the in-memory transport and fixed settings."""
    monkeypatch.setattr(cli_module, "load_settings", lambda path=None: settings)
    monkeypatch.setattr(cli_module, "configure_logging", lambda config: None)
    monkeypatch.setattr(cli_module, "create_relay", lambda s: Relay(transport, s))

    def use_runtime(answer_index=None):
        monkeypatch.setattr(
            cli_module,
            "create_telegram_runtime",
            lambda s: FakeRuntime(Relay(transport, s), answer_index),
        )

    return use_runtime


class TestNotifyCommand:
    def test_delivered(self, runner, patched, transport):
        result = runner.invoke(cli, ["notify", "deploy **done**"])

        assert result.exit_code == 0
        assert "Notification delivered" in result.output
        assert len(transport.sent) == 1
        assert "<b>done</b>" in transport.sent[0]
        assert ("initialize", None) in transport.calls
        assert transport.calls[-1] == ("shutdown", None)

    def test_high_priority(self, runner, patched, transport):
        result = runner.invoke(cli, ["notify", "build failed", "--priority", "high"])
        assert result.exit_code == 0
        assert transport.sent == ["build failed"]

    def test_not_delivered(self, runner, patched, transport):
        transport.failures = [PermanentDeliveryError("chat not found")]

        result = runner.invoke(cli, ["notify", "hello", "--priority", "high"])

        assert result.exit_code == EXIT_DELIVERY_FAILED
        assert "not delivered" in result.output

    def test_relay_error(self, runner, patched, monkeypatch):
        def broken(settings):
            raise RelayError("Telegram configuration missing", ErrorCode.CONFIGURATION_ERROR)

        monkeypatch.setattr(cli_module, "create_relay", broken)

        result = runner.invoke(cli, ["notify", "hello"])

        assert result.exit_code == EXIT_DELIVERY_FAILED
        assert "Error: Telegram configuration missing" in result.output

    def test_rejects_unknown_priority(self, runner, patched):
        result = runner.invoke(cli, ["notify", "hello", "--priority", "urgent"])
        assert result.exit_code == 2


class TestAskCommand:
    def test_chosen_value_is_printed(self, runner, patched, transport):
        patched(answer_index=1)

        result = runner.invoke(cli, ["ask", "Deploy v2?", "-o", "Deploy", "-o", "Abort"])

        assert result.exit_code == EXIT_CHOSEN
        assert result.output.strip().splitlines()[-1] == "Abort"
        assert transport.choices[0]["question"] == "Deploy v2?"

    def test_json_output(self, runner, patched):
        patched(answer_index=0)

        result = runner.invoke(
            cli, ["ask", "Deploy?", "-o", "Yes", "-o", "No", "--header", "Release", "--json"]
        )

        assert result.exit_code == EXIT_CHOSEN
        payload = json.loads(result.output.strip().splitlines()[-1])
        assert payload["outcome"] == "chosen"
        assert payload["value"] == "Yes"

    def test_timeout_exit_status(self, runner, patched):
        patched()

        result = runner.invoke(cli, ["ask", "Deploy?", "-o", "Yes", "--timeout", "0.05"])

        assert result.exit_code == EXIT_NO_DECISION
        assert "No decision: timed_out" in result.output

    def test_undelivered_exit_status(self, runner, patched, transport):
        patched()
        transport.failures = [PermanentDeliveryError("chat not found")]

        result = runner.invoke(cli, ["ask", "Deploy?", "-o", "Yes"])

        assert result.exit_code == EXIT_DELIVERY_FAILED

    def test_options_required(self, runner, patched):
        result = runner.invoke(cli, ["ask", "Deploy?"])
        assert result.exit_code == 2


class TestCheckConfig:
    def test_valid(self, runner, patched):
        result = runner.invoke(cli, ["--config", "telegram.local.md", "check-config"])

        assert result.exit_code == 0
        assert "Configuration valid (telegram.local.md)" in result.output
        assert "424242" in result.output

    def test_invalid(self, runner, monkeypatch):
        def fail(path=None):
            raise ValueError("Configuration validation failed")

        monkeypatch.setattr(cli_module, "load_settings", fail)

        result = runner.invoke(cli, ["--config", "missing.yaml", "check-config"])

        assert result.exit_code == 1
        assert "Configuration validation failed" in result.output


class TestConfigErrors:
    def test_notify_with_bad_config(self, runner, monkeypatch):
        def fail(path=None):
            raise FileNotFoundError("Configuration file not found: nope.yaml")

        monkeypatch.setattr(cli_module, "load_settings", fail)

        result = runner.invoke(cli, ["--config", "nope.yaml", "notify", "hi"])

        assert result.exit_code == EXIT_DELIVERY_FAILED
        assert "Configuration error" in result.output
