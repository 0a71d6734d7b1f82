"""Locating and starting the browser executable."""

import asyncio
import logging
import os
import platform
import shutil
import subprocess
from pathlib import Path

logger = logging.getLogger(__name__)

_LINUX_COMMANDS = [
    "brave-browser",
    "brave",
    "google-chrome",
    "google-chrome-stable",
    "chromium",
    "chromium-browser",
]

_MAC_PATHS = [
    "/Applications/Brave Browser.app/Contents/MacOS/Brave Browser",
    "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    "/Applications/Chromium.app/Contents/MacOS/Chromium",
]

_WINDOWS_PATHS = [
    r"%LocalAppData%\BraveSoftware\Brave-Browser\Application\brave.exe",
    r"%ProgramFiles%\BraveSoftware\Brave-Browser\Application\brave.exe",
    r"%ProgramFiles(x86)%\BraveSoftware\Brave-Browser\Application\brave.exe",
    r"%ProgramFiles%\Google\Chrome\Application\chrome.exe",
    r"%ProgramFiles(x86)%\Google\Chrome\Application\chrome.exe",
    r"%LocalAppData%\Google\Chrome\Application\chrome.exe",
]


def find_browser_executable(manual_path: str | None = None) -> str | None:
    """Find a Chromium-family browser, preferring Brave.

    An explicit ``manual_path`` wins when it exists.
    """
    if manual_path:
        if os.path.exists(manual_path):
            return manual_path
        logger.warning(f"Configured browser path does not exist: {manual_path}")

    system = platform.system()

    if system == "Darwin":
        for path in _MAC_PATHS:
            if os.path.exists(path):
                return path

    elif system == "Linux":
        for cmd in _LINUX_COMMANDS:
            found = shutil.which(cmd)
            if found:
                return found

    elif system == "Windows":
        for raw in _WINDOWS_PATHS:
            path = os.path.expandvars(raw)
            if "%" not in path and os.path.exists(path):
                return path

    return None


def build_launch_args(executable: str, port: int, profile_dir: Path, url: str, headless: bool = False) -> list[str]:
    args = [
        executable,
        f"--remote-debugging-port={port}",
        f"--user-data-dir={profile_dir}",
        "--remote-allow-origins=*",
        "--no-first-run",
        "--no-default-browser-check",
        "--disable-blink-features=AutomationControlled",
    ]
    if headless:
        args.append("--headless=new")
    args.append(url)
    return args


async def launch_browser(
    executable: str, port: int, profile_dir: Path, url: str, headless: bool = False
) -> asyncio.subprocess.Process:
    """Start the browser detached from our stdio. The caller waits for the endpoint."""
    profile_dir.mkdir(parents=True, exist_ok=True)
    args = build_launch_args(executable, port, profile_dir, url, headless=headless)
    logger.info(f"Launching browser: {executable} (port {port}, profile {profile_dir})")
    return await asyncio.create_subprocess_exec(
        *args,
        stdout=subprocess.DEVNULL,
        stderr=subprocess.DEVNULL,
        start_new_session=True,
    )
