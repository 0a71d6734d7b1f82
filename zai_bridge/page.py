"""Getting the prompt into the chat box.

Typing tens of kilobytes key by key is far too slow, so the prompt goes
through the clipboard: select and delete whatever is in the box, put the
text on the clipboard, paste. Pressing submit is a separate step so the
caller can arm the network listener in between.
"""

import asyncio
import json
import logging
import sys
from typing import Protocol

from zai_bridge.cdp import CDPConnection
from zai_bridge.exceptions import CDPError, InputTimeout

logger = logging.getLogger(__name__)

# Input.dispatchKeyEvent modifier bits
_CTRL = 2
_META = 4


class PageDriver(Protocol):
    async def locate_input(self, timeout: float) -> None: ...

    async def clear(self) -> None: ...

    async def set_clipboard(self, text: str) -> None: ...

    async def paste(self) -> None: ...

    async def submit(self) -> None: ...


class CDPPageDriver:
    """PageDriver over a CDP connection to the chat tab."""

    def __init__(self, connection: CDPConnection, selector: str, origin: str | None = None):
        self.connection = connection
        self.selector = selector
        self.origin = origin

    def _element_js(self) -> str:
        return f"document.querySelector({json.dumps(self.selector)})"

    async def locate_input(self, timeout: float) -> None:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while loop.time() < deadline:
            if await self.connection.evaluate(f"!!{self._element_js()}"):
                return
            await asyncio.sleep(0.25)
        raise InputTimeout(f"No input matching {self.selector!r} within {timeout}s")

    async def clear(self) -> None:
        await self.connection.evaluate(f"""
            (() => {{
                const el = {self._element_js()};
                if (!el) return false;
                el.focus();
                if (typeof el.select === 'function') {{
                    el.select();
                }} else {{
                    const range = document.createRange();
                    range.selectNodeContents(el);
                    const sel = window.getSelection();
                    sel.removeAllRanges();
                    sel.addRange(range);
                }}
                return true;
            }})()
        """)
        await self._key("Backspace", "Backspace", 8)

    async def set_clipboard(self, text: str) -> None:
        if self.origin:
            try:
                await self.connection.send("Browser.grantPermissions", {
                    "origin": self.origin,
                    "permissions": ["clipboardReadWrite", "clipboardSanitizedWrite"],
                })
            except CDPError as e:
                logger.debug(f"Clipboard permission grant failed: {e}")
        await self.connection.evaluate(
            f"navigator.clipboard.writeText({json.dumps(text)})",
            await_promise=True,
            user_gesture=True,
        )

    async def paste(self) -> None:
        modifier = _META if sys.platform == "darwin" else _CTRL
        await self._key("v", "KeyV", 86, modifiers=modifier, commands=["paste"])

    async def submit(self) -> None:
        await self._key("Enter", "Enter", 13, text="\r")

    async def _key(
        self,
        key: str,
        code: str,
        vk: int,
        modifiers: int = 0,
        text: str | None = None,
        commands: list[str] | None = None,
    ):
        down = {
            "type": "keyDown",
            "key": key,
            "code": code,
            "windowsVirtualKeyCode": vk,
            "modifiers": modifiers,
        }
        if text is not None:
            down["text"] = text
        if commands:
            down["commands"] = commands
        await self.connection.send("Input.dispatchKeyEvent", down)
        await self.connection.send("Input.dispatchKeyEvent", {
            "type": "keyUp",
            "key": key,
            "code": code,
            "windowsVirtualKeyCode": vk,
            "modifiers": modifiers,
        })


async def deliver(driver: PageDriver, prompt: str, timeout: float, settle: float = 0.4):
    """Put ``prompt`` into the chat box, replacing anything already there. Does not submit."""
    await driver.locate_input(timeout)
    await driver.clear()
    await driver.set_clipboard(prompt)
    await driver.paste()
    # let the editor process the paste before anything else touches the page
    await asyncio.sleep(settle)
    logger.info(f"Prompt delivered ({len(prompt)} chars)")
