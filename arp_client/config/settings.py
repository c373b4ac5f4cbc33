from __future__ import annotations

from pathlib import Path

from pydantic_settings import BaseSettings, SettingsConfigDict

DEFAULT_POLL_INTERVAL_MS = 3000


class Settings(BaseSettings):
    APP_ENV: str = "development"
    LOG_LEVEL: str = "INFO"

    ARP_BASE_URL: str = "http://127.0.0.1:8000/api/v1"
    ARP_REQUEST_TIMEOUT: float = 60.0
    ARP_USER_ID: str = "vscode-user"
    ARP_POLL_INTERVAL_MS: int = DEFAULT_POLL_INTERVAL_MS
    ARP_DEFAULT_PROJECT_ROOT: str = ""

    COMMAND_OUTPUT_CAP_CHARS: int = 12000
    COMBINED_OUTPUT_CAP_CHARS: int = 10000
    REPORT_PREVIEW_CHARS: int = 6000
    DIAGNOSTIC_LOG_LIMIT: int = 150
    DIAGNOSTIC_MAX_ENTRIES: int = 5

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=True, extra="ignore")

    @property
    def base_url(self) -> str:
        return str(self.ARP_BASE_URL or "").strip().rstrip("/")

    @property
    def poll_interval_ms(self) -> int:
        value = int(self.ARP_POLL_INTERVAL_MS or 0)
        return value if value > 0 else DEFAULT_POLL_INTERVAL_MS

    @property
    def default_project_root(self) -> Path | None:
        raw = str(self.ARP_DEFAULT_PROJECT_ROOT or "").strip()
        if not raw:
            return None
        return Path(raw).expanduser().resolve()


def load_settings(**overrides) -> Settings:
    return Settings(**overrides)
