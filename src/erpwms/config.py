"""
Process settings and the company/schedule configuration file.

Two layers:

  Settings       environment / .env knobs that apply to the whole process
                 (database URL, log directory, blob store, scheduler poll).
  CompanyConfig  the JSON file listing companies (scopes) with their ERP
                 and WMS credentials, plus the job schedules.

The JSON file may use the PascalCase keys of existing deployments
("CompanyName", "SapB1", "RunOnStartup"); snake_case works too.
"""
import json
from datetime import timedelta
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_pascal
from pydantic_settings import BaseSettings


class ConfigurationError(RuntimeError):
    """Raised when the company/schedule configuration cannot be resolved."""


class Settings(BaseSettings):
    database_url: str = "sqlite:///./erpwms.db"
    config_file: str = "config.json"
    log_dir: str = "logs"
    log_retention_days: int = 30
    warehouse_base_url: str = "https://api.p4warehouse.com/"
    http_timeout_seconds: float = 120.0
    http_max_retries: int = 3
    http_backoff_seconds: float = 2.0
    service_layer_verify_ssl: bool = False
    blob_root: str = ""  # empty disables product image sync
    blob_base_url: str = ""
    blob_max_file_size_bytes: int = 10_485_760
    upload_lookback_days: int = 7
    scheduler_poll_seconds: float = 5.0

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


# ── Company / schedule file ───────────────────────────────────────────────────

class _ConfigModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_pascal, populate_by_name=True)


class SapB1Config(_ConfigModel):
    service_layer_url: str = ""
    company_db: str = ""
    client_name: str = ""
    user_name: str = ""
    password: str = ""


class CompanySettings(_ConfigModel):
    product_batch_size: int = 100
    default_warehouse_code: str = "01"
    log_retention_days: int = 30


class Company(_ConfigModel):
    company_name: str
    sap_b1: SapB1Config = Field(default_factory=SapB1Config)
    p4_warehouse_api_key: str = ""
    settings: CompanySettings = Field(default_factory=CompanySettings)


class Schedule(_ConfigModel):
    name: str
    active: bool = False
    run_on_startup: bool = False
    interval: timedelta = timedelta(hours=1)
    sync_mode: str = "Delta"  # "Delta" or "Full"
    force_sync: bool = False
    batch_size: int = 50


class CompanyConfig(_ConfigModel):
    companies: List[Company] = Field(default_factory=list)
    schedules: List[Schedule] = Field(default_factory=list)

    def get_company(self, name: Optional[str] = None) -> Company:
        """Return the named company, or the first one when no name is given.

        Raises:
            ConfigurationError: if no matching company is configured.
        """
        if not self.companies:
            raise ConfigurationError("No companies configured")
        if not name:
            return self.companies[0]
        for company in self.companies:
            if company.company_name.lower() == name.lower():
                return company
        raise ConfigurationError(f"Company {name!r} is not configured")

    def get_schedule(self, name: str) -> Optional[Schedule]:
        for schedule in self.schedules:
            if schedule.name.lower() == name.lower():
                return schedule
        return None


def load_company_config(path) -> CompanyConfig:
    """Parse the JSON company/schedule file.

    Raises:
        ConfigurationError: if the file is missing or malformed.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigurationError(f"Configuration file not found: {path}")
    try:
        return CompanyConfig.model_validate(json.loads(path.read_text()))
    except (ValueError, ValidationError) as exc:
        raise ConfigurationError(f"Invalid configuration file {path}: {exc}") from exc
