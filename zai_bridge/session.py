"""The one persistent browser session the bridge drives.

``BrowserSessionManager.acquire`` first tries to attach to a browser already
listening on the fixed debugging port (left over from an earlier run) and
only cold-launches one, with the persistent profile, when nothing answers.
The launched browser is never killed on shutdown so the next process can
reattach to it and keep the logged-in state.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Callable

import aiohttp

from zai_bridge.cdp import CDPConnection, get_version, list_targets, new_target
from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import BrowserUnavailable, NavigationTimeout
from zai_bridge.launcher import find_browser_executable, launch_browser
from zai_bridge.views import ConnectionState

logger = logging.getLogger(__name__)

_EMPTY_URLS = {"", "about:blank", "chrome://newtab/", "chrome://new-tab-page/", "brave://newtab/"}


@dataclass
class Session:
    endpoint: str
    http: aiohttp.ClientSession
    process: asyncio.subprocess.Process | None = None
    state: ConnectionState = ConnectionState.DISCONNECTED
    browser_version: str = ""
    connections: dict[str, CDPConnection] = field(default_factory=dict)

    @property
    def launched(self) -> bool:
        return self.process is not None


@dataclass
class Page:
    target_id: str
    url: str
    connection: CDPConnection


class BrowserSessionManager:
    def __init__(
        self,
        settings: BridgeSettings,
        connection_factory: Callable[[str], CDPConnection] = CDPConnection,
    ):
        self.settings = settings
        self._connection_factory = connection_factory
        self._session: Session | None = None
        self._http: aiohttp.ClientSession | None = None
        self._lock = asyncio.Lock()
        # chat and login may both pick and navigate the same tab
        self._page_lock = asyncio.Lock()
        self._state = ConnectionState.DISCONNECTED

    @property
    def state(self) -> ConnectionState:
        return self._state

    async def _get_http(self) -> aiohttp.ClientSession:
        if self._http is None or self._http.closed:
            self._http = aiohttp.ClientSession()
        return self._http

    async def acquire(self) -> Session:
        """Return the live session, attaching or launching on first use."""
        async with self._lock:
            http = await self._get_http()
            endpoint = self.settings.cdp_http_url

            if self._session is not None:
                try:
                    await get_version(http, endpoint)
                    return self._session
                except (aiohttp.ClientError, asyncio.TimeoutError):
                    logger.warning("Browser endpoint stopped answering, reconnecting")
                    await self._drop_session()

            self._state = ConnectionState.CONNECTING
            session = Session(endpoint=endpoint, http=http, state=ConnectionState.CONNECTING)
            try:
                try:
                    version = await get_version(http, endpoint)
                    logger.info(f"Attached to running browser on {endpoint}")
                except (aiohttp.ClientError, asyncio.TimeoutError):
                    session.process = await self._launch()
                    version = await self._wait_for_endpoint(http, endpoint, session.process)
            except BaseException:
                self._state = ConnectionState.DISCONNECTED
                raise

            session.browser_version = version.get("Browser", "")
            session.state = ConnectionState.CONNECTED
            self._state = ConnectionState.CONNECTED
            self._session = session
            return session

    async def _launch(self) -> asyncio.subprocess.Process:
        executable = find_browser_executable(self.settings.browser_path)
        if not executable:
            raise BrowserUnavailable(
                "No Brave/Chrome executable found. Set ZAI_BRIDGE_BROWSER_PATH to the browser binary."
            )
        return await launch_browser(
            executable,
            self.settings.cdp_port,
            self.settings.profile_dir,
            self.settings.target_url,
            headless=self.settings.headless,
        )

    async def _wait_for_endpoint(
        self, http: aiohttp.ClientSession, endpoint: str, process: asyncio.subprocess.Process
    ) -> dict:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.launch_timeout
        while loop.time() < deadline:
            if process.returncode is not None:
                raise BrowserUnavailable(f"Browser exited during startup (code {process.returncode})")
            try:
                return await get_version(http, endpoint, timeout=1.0)
            except (aiohttp.ClientError, asyncio.TimeoutError):
                await asyncio.sleep(0.25)
        raise BrowserUnavailable(f"Browser did not expose {endpoint} within {self.settings.launch_timeout}s")

    async def _drop_session(self):
        if self._session is None:
            return
        for conn in self._session.connections.values():
            await conn.close()
        self._session.connections.clear()
        self._session.state = ConnectionState.DISCONNECTED
        self._session = None
        self._state = ConnectionState.DISCONNECTED

    async def close(self):
        """Release connections. A launched browser keeps running for later reattach."""
        async with self._lock:
            await self._drop_session()
            if self._http is not None:
                await self._http.close()
                self._http = None

    # ── Page location ────────────────────────────────────────────────────────

    async def locate_page(self, session: Session) -> Page:
        """Find the target-site tab, or open one and wait for it to settle."""
        async with self._page_lock:
            return await self._locate_page(session)

    async def _locate_page(self, session: Session) -> Page:
        targets = await list_targets(session.http, session.endpoint)
        host = self.settings.target_host

        for target in targets:
            if host in target.get("url", ""):
                conn = await self._connection_for(session, target)
                await self._wait_ready(conn)
                return Page(target["id"], target["url"], conn)

        target = next((t for t in targets if t.get("url", "") in _EMPTY_URLS), None)
        if target is None:
            logger.info("No reusable tab, opening a new one")
            target = await new_target(session.http, session.endpoint)

        conn = await self._connection_for(session, target)
        await self._navigate(conn, self.settings.target_url)
        # the site runs its own bot checks right after load
        await asyncio.sleep(self.settings.page_warmup)
        return Page(target["id"], self.settings.target_url, conn)

    async def _connection_for(self, session: Session, target: dict) -> CDPConnection:
        target_id = target["id"]
        conn = session.connections.get(target_id)
        if conn is not None:
            if conn.is_alive:
                return conn
            logger.debug(f"Evicting dead CDP connection for {target_id}")
            await conn.close()
            del session.connections[target_id]

        conn = self._connection_factory(target["webSocketDebuggerUrl"])
        await conn.connect()
        session.connections[target_id] = conn
        return conn

    async def _wait_ready(self, conn: CDPConnection):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.navigation_timeout
        while loop.time() < deadline:
            if await conn.evaluate("document.readyState") == "complete":
                return
            await asyncio.sleep(0.5)
        raise NavigationTimeout(f"Page not ready after {self.settings.navigation_timeout}s")

    async def _navigate(self, conn: CDPConnection, url: str):
        idle_loaders: set[str] = set()
        changed = asyncio.Event()

        def _on_lifecycle(params: dict):
            if params.get("name") == "networkIdle":
                idle_loaders.add(params.get("loaderId", ""))
                changed.set()

        off = conn.on("Page.lifecycleEvent", _on_lifecycle)
        try:
            await conn.send("Page.enable")
            await conn.send("Page.setLifecycleEventsEnabled", {"enabled": True})
            result = await conn.send("Page.navigate", {"url": url}, timeout=self.settings.navigation_timeout)
            if result.get("errorText"):
                raise NavigationTimeout(f"Navigation to {url} failed: {result['errorText']}")
            loader_id = result.get("loaderId")

            async def _settled():
                while (loader_id not in idle_loaders) if loader_id else not idle_loaders:
                    changed.clear()
                    await changed.wait()

            await asyncio.wait_for(_settled(), timeout=self.settings.navigation_timeout)
        except asyncio.TimeoutError:
            raise NavigationTimeout(f"{url} did not reach network idle within {self.settings.navigation_timeout}s")
        finally:
            off()
        logger.info(f"Opened {url}")
