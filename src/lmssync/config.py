from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    lms_api_key: str = ""
    lms_base_url: str = "https://api.northpass.com"
    lms_page_size: int = 100
    lms_page_delay_seconds: float = 0.125  # 8 req/s, under the 10 req/s limit
    lms_rate_limit_backoff_seconds: float = 10.0
    lms_request_timeout_seconds: float = 30.0
    lms_max_pages: int = 50

    database_url: str = "sqlite:///./lmssync.db"

    sync_batch_size: int = 100
    sync_stale_lock_minutes: int = 30
    sync_exact_counts: bool = False
    sync_hour: int = 2
    enrollment_max_age_days: int = 7

    # Thresholds were tuned by hand against the production partner list;
    # there is no derivation behind the exact values.
    match_auto_link_threshold: float = 0.85
    match_suggestion_threshold: float = 0.5
    match_group_prefix: str = "ptr_"
    match_denylist: str = "all partner,all user,admin,internal"
    auto_match_on_group_sync: bool = True

    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"

    @property
    def match_denylist_terms(self) -> List[str]:
        return [t.strip().lower() for t in self.match_denylist.split(",") if t.strip()]


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings
