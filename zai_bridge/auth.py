"""Interactive login capture.

The user logs in by hand in the managed browser; we poll the tab's cookie
jar until the site's session token shows up and hand back the matching
cookies as one ``Cookie`` header string.
"""

import asyncio
import logging
from enum import Enum

from zai_bridge.cdp import CDPConnection
from zai_bridge.config import BridgeSettings
from zai_bridge.exceptions import CDPError, LoginCancelled, LoginTimeout
from zai_bridge.session import BrowserSessionManager, Session
from zai_bridge.views import AuthCredential

logger = logging.getLogger(__name__)

BACKOFF_FACTOR = 1.5


class LoginState(str, Enum):
    WAITING = "waiting"
    CAPTURED = "captured"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


class AuthCapture:
    def __init__(self, settings: BridgeSettings, manager: BrowserSessionManager):
        self.settings = settings
        self.manager = manager
        self.state = LoginState.WAITING
        self.attempts = 0

    def delay_for(self, attempt: int) -> float:
        delay = self.settings.login_initial_interval * (BACKOFF_FACTOR ** attempt)
        return min(delay, self.settings.login_max_interval)

    def _domain_matches(self, domain: str) -> bool:
        domain = domain.lstrip(".")
        target = self.settings.cookie_domain
        return domain == target or domain.endswith(f".{target}")

    def build_credential(self, cookies: list[dict]) -> AuthCredential | None:
        """A credential if a token cookie is present, else None."""
        token_names = set(self.settings.token_cookie_names)
        if not any(c.get("name") in token_names for c in cookies):
            return None
        selected = [
            c for c in cookies
            if c.get("name") in token_names or self._domain_matches(c.get("domain", ""))
        ]
        cookie_string = "; ".join(f"{c['name']}={c.get('value', '')}" for c in selected)
        return AuthCredential(cookie_string=cookie_string)

    async def read_cookies(self, connection: CDPConnection) -> list[dict]:
        result = await connection.send("Network.getCookies", {"urls": self.settings.cookie_urls})
        return result.get("cookies", [])

    async def _pause(self, delay: float, cancel: asyncio.Event | None):
        if cancel is None:
            await asyncio.sleep(delay)
            return
        try:
            await asyncio.wait_for(cancel.wait(), timeout=delay)
        except asyncio.TimeoutError:
            pass

    async def poll(self, connection: CDPConnection, cancel: asyncio.Event | None = None) -> AuthCredential:
        """Run the polling state machine until captured, exhausted or cancelled."""
        self.state = LoginState.WAITING
        self.attempts = 0
        for attempt in range(self.settings.login_max_attempts):
            if cancel is not None and cancel.is_set():
                self.state = LoginState.CANCELLED
                raise LoginCancelled("Login flow cancelled")

            self.attempts = attempt + 1
            try:
                cookies = await self.read_cookies(connection)
            except (CDPError, ConnectionError, asyncio.TimeoutError) as e:
                # page is usually mid-navigation during the login redirect
                logger.debug(f"Cookie read failed on attempt {self.attempts}: {e}")
            else:
                credential = self.build_credential(cookies)
                if credential is not None:
                    self.state = LoginState.CAPTURED
                    logger.info(f"Login captured after {self.attempts} attempt(s)")
                    return credential

            await self._pause(self.delay_for(attempt), cancel)

        if cancel is not None and cancel.is_set():
            self.state = LoginState.CANCELLED
            raise LoginCancelled("Login flow cancelled")
        self.state = LoginState.TIMED_OUT
        raise LoginTimeout(f"No login detected after {self.settings.login_max_attempts} attempts")

    async def await_login(self, session: Session, cancel: asyncio.Event | None = None) -> AuthCredential:
        page = await self.manager.locate_page(session)
        logger.info(f"Waiting for login on {self.settings.target_url} in the opened browser")
        return await self.poll(page.connection, cancel)
