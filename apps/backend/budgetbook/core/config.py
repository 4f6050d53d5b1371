from pydantic_settings import BaseSettings, SettingsConfigDict
from pathlib import Path


class Settings(BaseSettings):
    APP_NAME: str = "budgetbook"
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # 로컬 우선 저장소: apps/backend/budgetbook.sqlite3 절대경로 (CWD 영향 방지)
    _default_db_path = Path(__file__).resolve().parents[2] / "budgetbook.sqlite3"
    DATABASE_URL: str = f"sqlite:///{_default_db_path}"

    CORS_ORIGINS: list[str] = ["*"]
    TIMEZONE: str = "Asia/Seoul"

    # Remote backend (Supabase). 비어 있으면 완전 오프라인 모드
    SUPABASE_URL: str = ""
    SUPABASE_ANON_KEY: str = ""
    REMOTE_TIMEOUT_SECONDS: float = 10.0

    SYNC_INTERVAL_SECONDS: float = 300.0
    SYNC_DEBOUNCE_MS: int = 500
    INITIAL_SYNC_TIMEOUT_SECONDS: float = 10.0
    CONNECTIVITY_PROBE_SECONDS: float = 15.0
    SESSION_RETRY_SECONDS: float = 30.0

    model_config = SettingsConfigDict(env_file=(".env",), env_prefix="BUDGETBOOK_", case_sensitive=False)

    @property
    def sync_enabled(self) -> bool:
        return bool(self.SUPABASE_URL and self.SUPABASE_ANON_KEY)


settings = Settings()
