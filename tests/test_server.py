"""Process and session lifetimes around the shared Zotero client."""

from __future__ import annotations

import asyncio
import logging

import pytest

from zotero_manager import client as client_module
from zotero_manager import mcp, server_lifespan, session_lifespan
from zotero_manager.cli import log_startup_config, serve
from zotero_manager.errors import ConfigurationError


@pytest.fixture
def shared(monkeypatch, client):
    monkeypatch.setattr(client_module, "_CLIENT", client)
    return client


def test_closing_one_session_keeps_the_shared_client(shared, fake, clock) -> None:
    fake.add_item("Shared")
    shared.retry.pause_for(5)

    async def scenario():
        async with session_lifespan(mcp):  # second session
            async with session_lifespan(mcp):  # first session, closes early
                pass
            return await client_module.get_zotero_client().search_items({})

    items = asyncio.run(scenario())
    assert [i.title for i in items] == ["Shared"]
    assert client_module._CLIENT is shared
    assert not shared._http.is_closed
    assert clock.sleeps == [5.0]
    assert len(shared.cache) == 1


def test_process_lifespan_closes_the_shared_client(shared) -> None:
    async def scenario():
        async with server_lifespan():
            assert client_module._CLIENT is shared

    asyncio.run(scenario())
    assert client_module._CLIENT is None
    assert shared._http.is_closed


def test_serve_runs_transport_inside_process_lifespan(shared, monkeypatch) -> None:
    seen = []

    async def run_stdio_async():
        seen.append(client_module._CLIENT)

    monkeypatch.setattr(mcp, "run_stdio_async", run_stdio_async)
    asyncio.run(serve("stdio"))
    assert seen == [shared]
    assert client_module._CLIENT is None


def test_startup_log_names_the_library(shared, caplog) -> None:
    with caplog.at_level(logging.INFO, logger="zotero_manager"):
        log_startup_config()
    assert '"library":"user:1"' in caplog.text
    assert "testkey" not in caplog.text


def test_startup_log_reports_configuration_problems(monkeypatch, caplog) -> None:
    def broken():
        raise ConfigurationError("ZOTERO_API_KEY is required")

    monkeypatch.setattr("zotero_manager.cli.get_zotero_client", broken)
    with caplog.at_level(logging.INFO, logger="zotero_manager"):
        log_startup_config()
    assert "Zotero client not ready: Configuration error: ZOTERO_API_KEY is required" in caplog.text
