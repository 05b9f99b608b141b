"""Unit tests for vulnsync.config — Pydantic settings models."""

import datetime as dt
import json
from pathlib import Path

import pytest
import yaml
from pydantic import ValidationError

from vulnsync.config import LockSettings, SyncSettings, VendorProduct, find_settings, load_settings

# ── VendorProduct ────────────────────────────────────────────────────────────


class TestVendorProduct:
    def test_from_string(self):
        vp = VendorProduct.model_validate("Apache:Struts")
        assert vp.as_tuple() == ("apache", "struts")

    def test_from_mapping(self):
        assert VendorProduct(vendor=" Acme ", product="Widget").as_tuple() == ("acme", "widget")

    def test_missing_separator(self):
        with pytest.raises(ValidationError):
            VendorProduct.model_validate("struts")

    def test_empty_component(self):
        with pytest.raises(ValidationError):
            VendorProduct.model_validate("apache:")


# ── LockSettings ─────────────────────────────────────────────────────────────


class TestLockSettings:
    def test_defaults(self):
        lock = LockSettings()
        assert lock.file_name == "vulnsync.update.lock"
        assert lock.stale_after_seconds == 300
        assert lock.retry_seconds == 5
        assert lock.max_attempts == 60

    def test_attempts_positive(self):
        with pytest.raises(ValidationError):
            LockSettings(max_attempts=0)


# ── SyncSettings ─────────────────────────────────────────────────────────────


class TestSyncSettings:
    def test_defaults(self):
        s = SyncSettings()
        assert s.auto_update is True
        assert s.valid_for_hours == 0
        assert s.modified_valid_for_days == 7
        assert s.metadata_mode == "meta"
        assert s.distinct_major_pairs() == [("apache", "struts")]
        assert s.db_path.name == "vulnsync.db"

    def test_years_default_to_current(self):
        s = SyncSettings(start_year=2020)
        assert s.years()[0] == 2020
        assert s.years()[-1] == dt.datetime.now().year

    def test_explicit_year_range(self):
        assert SyncSettings(start_year=2021, end_year=2022).years() == [2021, 2022]

    def test_year_url(self):
        s = SyncSettings(cve_base_url="https://mirror/nvd-{year}.json.gz")
        assert s.year_url(2021) == "https://mirror/nvd-2021.json.gz"

    def test_base_url_needs_placeholder(self):
        with pytest.raises(ValidationError):
            SyncSettings(cve_base_url="https://mirror/nvd.json.gz")

    def test_end_before_start(self):
        with pytest.raises(ValidationError):
            SyncSettings(start_year=2022, end_year=2021)

    def test_start_year_floor(self):
        with pytest.raises(ValidationError):
            SyncSettings(start_year=1999)

    def test_metadata_mode(self):
        assert SyncSettings(metadata_mode="HEAD").metadata_mode == "head"
        with pytest.raises(ValidationError):
            SyncSettings(metadata_mode="ftp")

    def test_data_directory_expanded(self, monkeypatch, tmp_path):
        monkeypatch.setenv("VULNSYNC_HOME", str(tmp_path))
        s = SyncSettings(data_directory="$VULNSYNC_HOME/cache")
        assert s.data_directory == tmp_path / "cache"
        assert s.db_path == tmp_path / "cache" / "vulnsync.db"

    def test_negative_window(self):
        with pytest.raises(ValidationError):
            SyncSettings(valid_for_hours=-1)


# ── load_settings ────────────────────────────────────────────────────────────


class TestLoadSettings:
    def test_yaml(self, tmp_path: Path):
        path = tmp_path / "vulnsync.yaml"
        path.write_text(
            yaml.safe_dump(
                {
                    "data_directory": str(tmp_path / "data"),
                    "valid_for_hours": 4,
                    "distinct_major_products": ["apache:struts", {"vendor": "acme", "product": "widget"}],
                    "lock": {"retry_seconds": 1},
                }
            )
        )
        s = load_settings(path)
        assert s.valid_for_hours == 4
        assert s.distinct_major_pairs() == [("apache", "struts"), ("acme", "widget")]
        assert s.lock.retry_seconds == 1

    def test_json(self, tmp_path: Path):
        path = tmp_path / "vulnsync.json"
        path.write_text(json.dumps({"start_year": 2010, "end_year": 2012}))
        assert load_settings(path).years() == [2010, 2011, 2012]

    def test_empty_yaml(self, tmp_path: Path):
        path = tmp_path / "vulnsync.yml"
        path.write_text("")
        assert load_settings(path).auto_update is True

    def test_unknown_suffix(self, tmp_path: Path):
        path = tmp_path / "settings.conf"
        path.write_text("nvd_enabled: false\n")
        assert load_settings(path).nvd_enabled is False

    def test_invalid(self, tmp_path: Path):
        path = tmp_path / "vulnsync.yaml"
        path.write_text("max_download_threads: 0\n")
        with pytest.raises(ValidationError):
            load_settings(path)

    def test_missing_file(self, tmp_path: Path):
        with pytest.raises(FileNotFoundError):
            load_settings(tmp_path / "nope.yaml")


# ── find_settings ────────────────────────────────────────────────────────────


class TestFindSettings:
    def test_prefers_yaml(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "vulnsync.yaml").write_text("")
        (tmp_path / "vulnsync.json").write_text("{}")
        assert find_settings() == "vulnsync.yaml"

    def test_falls_back_to_json(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        (tmp_path / "vulnsync.json").write_text("{}")
        assert find_settings() == "vulnsync.json"

    def test_none_found(self, tmp_path: Path, monkeypatch):
        monkeypatch.chdir(tmp_path)
        assert find_settings() is None
