"""Tests for browser lifecycle: lazy launch, reconnect, isolated contexts."""

import asyncio

import pytest
from playwright.async_api import Error as PlaywrightError

from core.exceptions import BrowserUnavailable
from models.request import ProxyCredentials
from services.browser.session_manager import SessionManager
from tests.conftest import FakeLauncher


def make_manager(launcher=None, **kwargs) -> SessionManager:
    return SessionManager(launcher=launcher or FakeLauncher(), launch_retries=3, retry_delay=0, **kwargs)


class TestLaunch:
    @pytest.mark.asyncio
    async def test_browser_launched_lazily_once(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        assert not manager.connected
        assert launcher.attempts == 0

        await manager.get_page()
        await manager.get_page()
        assert launcher.attempts == 1
        assert manager.connected

    @pytest.mark.asyncio
    async def test_concurrent_first_calls_share_one_launch(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        await asyncio.gather(*(manager.get_page() for _ in range(5)))
        assert launcher.attempts == 1
        assert len(launcher.browsers[0].contexts) == 5

    @pytest.mark.asyncio
    async def test_launch_retried_then_succeeds(self):
        launcher = FakeLauncher(failures=2)
        manager = make_manager(launcher)
        await manager.get_page()
        assert launcher.attempts == 3
        assert manager.connected

    @pytest.mark.asyncio
    async def test_exhausted_retries_raise_browser_unavailable(self):
        launcher = FakeLauncher(failures=5)
        manager = make_manager(launcher)
        with pytest.raises(BrowserUnavailable) as exc_info:
            await manager.get_page()
        assert launcher.attempts == 3
        assert "chrome exited early" in exc_info.value.message
        assert not manager.connected

    @pytest.mark.asyncio
    async def test_start_swallows_launch_failure(self):
        launcher = FakeLauncher(failures=3)
        manager = make_manager(launcher)
        await manager.start()
        assert not manager.connected
        # A later request retries from scratch
        await manager.get_page()
        assert manager.connected


class TestDisconnect:
    @pytest.mark.asyncio
    async def test_disconnect_clears_handle_and_next_call_relaunches(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        await manager.get_page()
        launcher.browsers[0].disconnect()
        assert not manager.connected

        page = await manager.get_page()
        assert launcher.attempts == 2
        assert page.context.browser is launcher.browsers[1]

    @pytest.mark.asyncio
    async def test_dead_handle_without_event_is_replaced(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        await manager.get_page()
        launcher.browsers[0].connected = False
        await manager.get_page()
        assert launcher.attempts == 2

    @pytest.mark.asyncio
    async def test_context_failure_on_dead_browser(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        browser = await manager.ensure_browser()

        async def dies_mid_call(**options):
            browser.connected = False
            raise PlaywrightError("Browser has been closed")

        browser.new_context = dies_mid_call
        with pytest.raises(BrowserUnavailable):
            await manager.get_page()
        assert not manager.connected
        assert manager._browser is None


class TestPages:
    @pytest.mark.asyncio
    async def test_each_page_gets_its_own_context(self):
        manager = make_manager()
        first = await manager.get_page()
        second = await manager.get_page()
        assert first.context is not second.context

    @pytest.mark.asyncio
    async def test_cache_disabled_and_service_workers_blocked(self):
        manager = make_manager()
        page = await manager.get_page()
        assert page.context.options["service_workers"] == "block"
        assert ("Network.setCacheDisabled", {"cacheDisabled": True}) in page.context.cdp.sent

    @pytest.mark.asyncio
    async def test_user_agent_and_http_credentials(self):
        manager = make_manager()
        page = await manager.get_page(
            user_agent="UA-1", proxy=ProxyCredentials(username="u", password="p")
        )
        assert page.context.options["user_agent"] == "UA-1"
        assert page.context.options["http_credentials"] == {"username": "u", "password": "p"}
        assert "proxy" not in page.context.options

    @pytest.mark.asyncio
    async def test_proxy_credentials_with_proxy_server(self):
        manager = make_manager(proxy_server="http://proxy.test:3128")
        page = await manager.get_page(proxy=ProxyCredentials(username="u", password="p"))
        assert page.context.options["proxy"] == {
            "server": "http://proxy.test:3128", "username": "u", "password": "p",
        }

    @pytest.mark.asyncio
    async def test_incomplete_proxy_credentials_ignored(self):
        manager = make_manager()
        page = await manager.get_page(proxy=ProxyCredentials(username="u"))
        assert "http_credentials" not in page.context.options

    @pytest.mark.asyncio
    async def test_close_page_closes_context(self):
        manager = make_manager()
        page = await manager.get_page()
        await manager.close_page(page)
        assert page.context.closed

    @pytest.mark.asyncio
    async def test_close_page_swallows_errors(self):
        manager = make_manager()
        page = await manager.get_page()
        page.context.close_error = RuntimeError("already gone")
        await manager.close_page(page)
        assert page.context.closed

    @pytest.mark.asyncio
    async def test_page_context_manager_cleans_up_on_error(self):
        manager = make_manager()
        with pytest.raises(ValueError):
            async with manager.page() as page:
                raise ValueError("solver failure")
        assert page.context.closed

    @pytest.mark.asyncio
    async def test_close_shuts_everything_down(self):
        launcher = FakeLauncher()
        manager = make_manager(launcher)
        await manager.get_page()
        await manager.close()
        assert launcher.browsers[0].closed
        assert launcher.stopped
        assert not manager.connected
