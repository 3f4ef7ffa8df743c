"""Tests for application wiring."""

import asyncio
import os

import pytest

from conftest import FakeDispatcher, FakeRemote, ScriptedProbe, entry
from print_relay import app as app_module
from print_relay.adapters import LpqSpoolerProbe, PowerShellSpoolerProbe
from print_relay.app import PrintRelayApp, build_probe
from print_relay.config import PrinterConfig, load_config
from print_relay.core import ConfigurationError, DispatchResult, RemoteJob


@pytest.fixture
def relay_config(tmp_path, queue_config):
    config = load_config(tmp_path / "relay.cfg")
    config.queue = queue_config
    config.printer.name = "Office"
    return config


def test_build_probe_honours_backend():
    assert isinstance(build_probe(PrinterConfig(backend="lpq")), LpqSpoolerProbe)
    assert isinstance(
        build_probe(PrinterConfig(backend="powershell", powershell_path="pwsh")),
        PowerShellSpoolerProbe,
    )


@pytest.mark.skipif(os.name == "nt", reason="auto selection on POSIX hosts")
def test_build_probe_without_lpq_is_a_configuration_error(monkeypatch):
    monkeypatch.setattr(app_module.shutil, "which", lambda name: None)

    with pytest.raises(ConfigurationError):
        build_probe(PrinterConfig(backend="auto"))


@pytest.mark.asyncio
async def test_run_returns_stop_reason(relay_config):
    remote = FakeRemote([RemoteJob(url="https://files.example.com/a.pdf", id=1)])
    probe = ScriptedProbe(latest=[entry(3, "Normal")], by_id=[entry(3, "Normal"), None])
    relay = PrintRelayApp(
        relay_config, remote=remote, dispatcher=FakeDispatcher(), probe=probe
    )

    reason = await asyncio.wait_for(relay.run(), timeout=3.0)

    assert reason == "deleted"
    snapshot = await relay.health.snapshot()
    assert snapshot["queue"]["state"] == "stopped"


@pytest.mark.asyncio
async def test_run_passes_token_to_remote(relay_config):
    relay_config.api.token = "configured"
    remote = FakeRemote([RemoteJob(url="https://files.example.com/a.pdf", id=1)])
    dispatcher = FakeDispatcher(DispatchResult(False, "printer offline"))
    relay = PrintRelayApp(
        relay_config, remote=remote, dispatcher=dispatcher, probe=ScriptedProbe()
    )

    reason = await asyncio.wait_for(relay.run(token="override"), timeout=3.0)

    assert reason == "print-error"
    assert remote.tokens == ["override"]


@pytest.mark.asyncio
async def test_run_without_printer_is_rejected(relay_config):
    relay_config.printer.name = None
    relay = PrintRelayApp(
        relay_config,
        remote=FakeRemote(),
        dispatcher=FakeDispatcher(),
        probe=ScriptedProbe(),
    )

    with pytest.raises(ConfigurationError):
        await relay.run()
