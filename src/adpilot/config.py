from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os

from dotenv import load_dotenv


def _truthy(v: str | None) -> bool:
    if v is None:
        return False
    return v.strip().lower() in {"1", "true", "yes", "y", "on"}


def _env(name: str) -> str | None:
    return (os.getenv(name) or "").strip() or None


@dataclass(frozen=True)
class Settings:
    db_path: Path
    web_host: str
    web_port: int
    frontend_url: str
    oauth_redirect_uri: str
    google_ads_client_id: str | None
    google_ads_client_secret: str | None
    google_ads_developer_token: str | None
    google_ads_login_customer_id: str | None
    google_ads_refresh_token: str | None
    google_ads_customer_id: str | None
    telegram_bot_token: str | None
    telegram_allowed_chat_id: int | None
    demo_mode: bool
    auto_apply_confidence: float = 100.0
    revert_compensates: bool = False
    mutate_timeout_sec: float = 30.0

    @staticmethod
    def load() -> "Settings":
        load_dotenv()

        db_path = Path(os.getenv("ADPILOT_DB_PATH", "./data/adpilot.sqlite3"))
        web_host = os.getenv("ADPILOT_WEB_HOST", "127.0.0.1")
        web_port = int(os.getenv("ADPILOT_WEB_PORT", "3001"))
        frontend_url = (os.getenv("FRONTEND_URL") or "http://localhost:5173").rstrip("/")
        redirect_uri = os.getenv("OAUTH_REDIRECT_URI", f"http://localhost:{web_port}/oauth/callback")

        allowed_chat_id_raw = _env("TELEGRAM_ALLOWED_CHAT_ID")
        allowed_chat_id = int(allowed_chat_id_raw) if allowed_chat_id_raw else None

        confidence = float(os.getenv("ADPILOT_AUTO_APPLY_CONFIDENCE", "100"))
        if not 0 <= confidence <= 100:
            raise ValueError("ADPILOT_AUTO_APPLY_CONFIDENCE must be between 0 and 100")

        return Settings(
            db_path=db_path,
            web_host=web_host,
            web_port=web_port,
            frontend_url=frontend_url,
            oauth_redirect_uri=redirect_uri,
            google_ads_client_id=_env("GOOGLE_ADS_CLIENT_ID"),
            google_ads_client_secret=_env("GOOGLE_ADS_CLIENT_SECRET"),
            google_ads_developer_token=_env("GOOGLE_ADS_DEVELOPER_TOKEN"),
            google_ads_login_customer_id=_env("GOOGLE_ADS_LOGIN_CUSTOMER_ID"),
            google_ads_refresh_token=_env("GOOGLE_ADS_REFRESH_TOKEN"),
            google_ads_customer_id=_env("GOOGLE_ADS_CUSTOMER_ID"),
            telegram_bot_token=_env("TELEGRAM_BOT_TOKEN"),
            telegram_allowed_chat_id=allowed_chat_id,
            demo_mode=_truthy(os.getenv("ADPILOT_DEMO_MODE", "0")),
            auto_apply_confidence=confidence,
            revert_compensates=_truthy(os.getenv("ADPILOT_REVERT_COMPENSATES", "0")),
            mutate_timeout_sec=float(os.getenv("ADPILOT_MUTATE_TIMEOUT_SEC", "30")),
        )

    @property
    def oauth_configured(self) -> bool:
        return bool(self.google_ads_client_id and self.google_ads_client_secret and self.google_ads_developer_token)
