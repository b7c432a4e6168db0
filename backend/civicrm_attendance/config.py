from functools import lru_cache
from pathlib import Path
from typing import List

from pydantic_settings import BaseSettings, SettingsConfigDict

BASE_PROJECT_ROOT = Path(__file__).resolve().parents[2]


class Settings(BaseSettings):
    project_root: Path = BASE_PROJECT_ROOT
    storage_dir: Path = project_root / "storage"
    sqlite_path: Path = storage_dir / "attendance.db"
    civicrm_base_url: str = "http://localhost"
    civicrm_rest_path: str = "/civicrm/ajax/rest"
    civicrm_api_key: str | None = None
    civicrm_site_key: str | None = None
    civicrm_timeout_seconds: float = 10.0
    civicrm_verify_tls: bool = True
    civicrm_batch_size: int = 100
    peer_default_contact_types: List[str] = ["Individual"]
    peer_default_items_per_page: int = 25
    peer_max_items_per_page: int = 250
    peer_match_workers: int = 4
    peer_batch_lookups: bool = True
    participant_source: str = "CiviCRM Attendance Module"

    model_config = SettingsConfigDict(
        env_file=str(BASE_PROJECT_ROOT / ".env"),
        env_file_encoding="utf-8",
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    settings = Settings()
    settings.storage_dir.mkdir(parents=True, exist_ok=True)
    settings.sqlite_path.parent.mkdir(parents=True, exist_ok=True)
    return settings
