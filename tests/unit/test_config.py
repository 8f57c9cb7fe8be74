"""Tests for settings and the company/schedule configuration file."""
import json
from datetime import timedelta

import pytest

from erpwms.config import CompanyConfig, ConfigurationError, Settings, load_company_config

PASCAL_CONFIG = {
    "Companies": [
        {
            "CompanyName": "ACME",
            "SapB1": {
                "ServiceLayerUrl": "https://sap:50000/b1s/v1",
                "CompanyDb": "SBO_ACME",
                "ClientName": "Acme",
                "UserName": "manager",
                "Password": "pw",
            },
            "P4WarehouseApiKey": "key",
            "Settings": {"ProductBatchSize": 10, "DefaultWarehouseCode": "WH1"},
        },
        {"CompanyName": "Globex"},
    ],
    "Schedules": [
        {"Name": "ProductSync", "Active": True, "RunOnStartup": True, "Interval": "00:30:00",
         "SyncMode": "Full", "ForceSync": False, "BatchSize": 20},
        {"Name": "VendorSync", "Active": False, "Interval": "01:00:00"},
    ],
}


@pytest.fixture(name="config_file")
def config_file_fixture(tmp_path):
    path = tmp_path / "config.json"
    path.write_text(json.dumps(PASCAL_CONFIG))
    return path


class TestLoadCompanyConfig:
    def test_reads_pascal_case_keys(self, config_file):
        config = load_company_config(config_file)
        acme = config.companies[0]
        assert acme.company_name == "ACME"
        assert acme.sap_b1.company_db == "SBO_ACME"
        assert acme.p4_warehouse_api_key == "key"
        assert acme.settings.default_warehouse_code == "WH1"

    def test_schedule_fields(self, config_file):
        schedule = load_company_config(config_file).get_schedule("productsync")
        assert schedule.active is True
        assert schedule.run_on_startup is True
        assert schedule.interval == timedelta(minutes=30)
        assert schedule.sync_mode == "Full"
        assert schedule.batch_size == 20

    def test_snake_case_keys_work_too(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"companies": [{"company_name": "ACME"}]}))
        assert load_company_config(path).companies[0].company_name == "ACME"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_company_config(tmp_path / "nope.json")

    def test_malformed_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json")
        with pytest.raises(ConfigurationError):
            load_company_config(path)

    def test_invalid_shape(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"Companies": [{"SapB1": {}}]}))
        with pytest.raises(ConfigurationError):
            load_company_config(path)


class TestGetCompany:
    def test_defaults_to_first(self, config_file):
        assert load_company_config(config_file).get_company().company_name == "ACME"

    def test_case_insensitive_name(self, config_file):
        assert load_company_config(config_file).get_company("globex").company_name == "Globex"

    def test_unknown_company(self, config_file):
        with pytest.raises(ConfigurationError):
            load_company_config(config_file).get_company("Initech")

    def test_no_companies(self):
        with pytest.raises(ConfigurationError):
            CompanyConfig().get_company()


class TestSettings:
    def test_defaults(self):
        settings = Settings(_env_file=None)
        assert settings.http_max_retries == 3
        assert settings.upload_lookback_days == 7
        assert settings.blob_root == ""

    def test_env_override(self, monkeypatch):
        monkeypatch.setenv("UPLOAD_LOOKBACK_DAYS", "14")
        monkeypatch.setenv("DATABASE_URL", "sqlite:///other.db")
        settings = Settings(_env_file=None)
        assert settings.upload_lookback_days == 14
        assert settings.database_url == "sqlite:///other.db"
