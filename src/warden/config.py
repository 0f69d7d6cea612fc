"""Centralized configuration via Pydantic Settings.

All values loaded from environment variables prefixed with WARDEN_.
Only UI preferences are ever written to disk; everything else a session
holds is rebuilt from the live event stream.
"""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic_settings import BaseSettings, SettingsConfigDict

PreflightPolicy = Literal["queue", "confirm_high_risk"]


class Settings(BaseSettings):
    model_config = SettingsConfigDict(env_prefix="WARDEN_", env_file=".env", extra="ignore")

    # Agent backend
    backend_base_url: str = "http://127.0.0.1:8765"
    backend_api_key: str = ""
    backend_timeout_s: float = 15.0
    backend_max_retries: int = 3

    # ── Inbound event stream ──────────────────────────────────
    events_path: str = "/events"
    stream_reconnect_delay_s: float = 2.0

    # ── Persisted UI preferences ──────────────────────────────
    preferences_path: Path = Path("./.warden/preferences.json")

    # ── Approval gate ─────────────────────────────────────────
    preflight_policy: PreflightPolicy = "queue"
    approval_tick_interval_s: float = 1.0
    default_approval_timeout_s: float | None = None

    # Application
    log_level: str = "INFO"
    env: str = "development"

    def model_post_init(self, __context: object) -> None:
        if not self.preferences_path.is_absolute():
            self.preferences_path = Path.cwd() / self.preferences_path
        # The countdown must refresh at least once per second.
        if self.approval_tick_interval_s > 1.0:
            self.approval_tick_interval_s = 1.0


settings = Settings()  # type: ignore[call-arg]
