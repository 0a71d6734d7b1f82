"""Runtime settings for the bridge.

Everything has a working default for a local chat.z.ai setup. Values can be
overridden through ``ZAI_BRIDGE_*`` environment variables (a ``.env`` file in
the working directory is loaded first).
"""

import os
from pathlib import Path
from typing import Literal
from urllib.parse import urlparse

from dotenv import find_dotenv, load_dotenv
from pydantic import BaseModel, Field, field_validator

ENV_PREFIX = "ZAI_BRIDGE_"

DEFAULT_PROFILE_DIR = Path.home() / ".config" / "opencode" / "brave-zai-profile"
DEFAULT_INPUT_SELECTOR = 'textarea, [contenteditable="true"], div[role="textbox"]'


class BridgeSettings(BaseModel):
    # ── Browser ──────────────────────────────────────────────────────────────
    cdp_host: str = "127.0.0.1"
    cdp_port: int = 9223
    profile_dir: Path = DEFAULT_PROFILE_DIR
    browser_path: str | None = None
    headless: bool = False
    launch_timeout: float = 15.0

    # ── Target site ──────────────────────────────────────────────────────────
    target_url: str = "https://chat.z.ai"
    cookie_urls: list[str] = Field(default_factory=lambda: ["https://chat.z.ai", "https://z.ai"])
    token_cookie_names: list[str] = Field(default_factory=lambda: ["token"])
    completion_url_pattern: str = "/api/v2/chat/completions"
    input_selector: str = DEFAULT_INPUT_SELECTOR
    model: str = "glm-5"

    # ── Timing ───────────────────────────────────────────────────────────────
    input_timeout: float = 10.0
    navigation_timeout: float = 30.0
    response_timeout: float = 180.0
    page_warmup: float = 3.0
    paste_settle: float = 0.4
    login_max_attempts: int = 180
    login_initial_interval: float = 1.0
    login_max_interval: float = 5.0

    stream_mode: Literal["incremental", "buffered"] = "incremental"

    # ── HTTP app ─────────────────────────────────────────────────────────────
    host: str = "127.0.0.1"
    port: int = 8000

    @field_validator("profile_dir")
    @classmethod
    def _expand_profile_dir(cls, value: Path) -> Path:
        return value.expanduser()

    @property
    def cdp_http_url(self) -> str:
        return f"http://{self.cdp_host}:{self.cdp_port}"

    @property
    def target_host(self) -> str:
        return urlparse(self.target_url).hostname or self.target_url

    @property
    def cookie_domain(self) -> str:
        """Registrable part of the target host (``chat.z.ai`` -> ``z.ai``)."""
        parts = self.target_host.split(".")
        return ".".join(parts[-2:]) if len(parts) > 2 else self.target_host

    @classmethod
    def from_env(cls, **overrides) -> "BridgeSettings":
        """Build settings from ``ZAI_BRIDGE_*`` variables, then apply overrides."""
        load_dotenv(find_dotenv(usecwd=True))
        values: dict = {}
        for name, field in cls.model_fields.items():
            raw = os.environ.get(f"{ENV_PREFIX}{name.upper()}")
            if raw is None:
                continue
            if field.annotation == list[str]:
                values[name] = [item.strip() for item in raw.split(",") if item.strip()]
            else:
                values[name] = raw
        values.update(overrides)
        return cls.model_validate(values)
