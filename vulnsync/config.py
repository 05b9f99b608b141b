"""Configuration models using Pydantic.

Settings are validated on load; every knob the sync engine and the matcher
read lives here, including the list of products whose major version lines
are treated as unrelated products.
"""

import datetime as dt
import json
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator, model_validator

NVD_FEED_BASE_URL = "https://nvd.nist.gov/feeds/json/cve/2.0"


class VendorProduct(BaseModel):
    """A vendor/product pair.

    Accepts either a mapping or a ``vendor:product`` string::

        distinct_major_products:
          - apache:struts
          - vendor: example
            product: widget
    """

    vendor: str
    product: str

    @model_validator(mode="before")
    @classmethod
    def _from_string(cls, v: Any) -> Any:
        if isinstance(v, str):
            vendor, sep, product = v.partition(":")
            if not sep:
                raise ValueError(f"expected 'vendor:product', got {v!r}")
            return {"vendor": vendor, "product": product}
        return v

    @field_validator("vendor", "product")
    @classmethod
    def _normalize(cls, v: str) -> str:
        v = v.strip().lower()
        if not v:
            raise ValueError("must not be empty")
        return v

    def as_tuple(self) -> tuple[str, str]:
        return self.vendor, self.product


class LockSettings(BaseModel):
    """Update lock behaviour.

    Attributes:
        file_name: Lock marker file name inside the data directory.
        stale_after_seconds: Age after which an unheld marker is reclaimed.
        retry_seconds: Sleep between acquisition attempts.
        max_attempts: Attempts before giving up with ``LockTimeout``.
    """

    file_name: str = "vulnsync.update.lock"
    stale_after_seconds: float = Field(default=300.0, gt=0)
    retry_seconds: float = Field(default=5.0, ge=0)
    max_attempts: int = Field(default=60, ge=1)


class SyncSettings(BaseModel):
    """Validated sync engine configuration.

    Example YAML::

        data_directory: ~/.cache/vulnsync
        start_year: 2002
        valid_for_hours: 4
        modified_valid_for_days: 7
        metadata_mode: meta
        distinct_major_products:
          - apache:struts
        lock:
          retry_seconds: 5
    """

    data_directory: Path = Field(default_factory=lambda: Path.home() / ".cache" / "vulnsync")
    db_file_name: str = "vulnsync.db"
    schema_version: str = "1.1"

    auto_update: bool = True
    nvd_enabled: bool = True

    cve_base_url: str = f"{NVD_FEED_BASE_URL}/nvdcve-2.0-{{year}}.json.gz"
    cve_modified_url: str = f"{NVD_FEED_BASE_URL}/nvdcve-2.0-modified.json.gz"
    start_year: int = Field(default=2002, ge=2002)
    end_year: int | None = None

    valid_for_hours: float = Field(default=0.0, ge=0.0)
    modified_valid_for_days: int = Field(default=7, ge=0)

    metadata_mode: str = "meta"  # meta | head
    metadata_timeout_seconds: float = Field(default=60.0, gt=0)
    http_connect_timeout: float = Field(default=10.0, gt=0)
    http_read_timeout: float = Field(default=300.0, gt=0)
    user_agent: str = "vulnsync/0.1"

    max_download_threads: int = Field(default=3, ge=1)
    max_processing_threads: int = Field(default=4, ge=1)
    queue_size: int = Field(default=4, ge=1)

    lock: LockSettings = Field(default_factory=LockSettings)
    distinct_major_products: list[VendorProduct] = Field(
        default_factory=lambda: [VendorProduct(vendor="apache", product="struts")]
    )

    @field_validator("data_directory", mode="before")
    @classmethod
    def _expand_dir(cls, v: Any) -> Any:
        if isinstance(v, str):
            return Path(os.path.expandvars(v)).expanduser()
        return v

    @field_validator("metadata_mode")
    @classmethod
    def _check_mode(cls, v: str) -> str:
        v = v.strip().lower()
        if v not in ("meta", "head"):
            raise ValueError("metadata_mode must be 'meta' or 'head'")
        return v

    @field_validator("cve_base_url")
    @classmethod
    def _check_base_url(cls, v: str) -> str:
        if "{year}" not in v:
            raise ValueError("cve_base_url must contain a '{year}' placeholder")
        return v

    @model_validator(mode="after")
    def _check_years(self) -> "SyncSettings":
        if self.end_year is not None and self.end_year < self.start_year:
            raise ValueError("end_year must not be before start_year")
        return self

    @property
    def db_path(self) -> Path:
        return self.data_directory / self.db_file_name

    def years(self) -> list[int]:
        """Years covered by the yearly partitions, inclusive."""
        end = self.end_year if self.end_year is not None else dt.datetime.now().year
        return list(range(self.start_year, end + 1))

    def year_url(self, year: int) -> str:
        return self.cve_base_url.format(year=year)

    def distinct_major_pairs(self) -> list[tuple[str, str]]:
        return [vp.as_tuple() for vp in self.distinct_major_products]


def load_settings(path: Path) -> SyncSettings:
    """Load settings from a YAML or JSON file.

    Args:
        path: Path to the settings file.

    Returns:
        Validated ``SyncSettings`` instance.

    Raises:
        FileNotFoundError: if the file doesn't exist.
        pydantic.ValidationError: if content fails validation.
    """
    suffix = path.suffix.lower()
    content = path.read_text(encoding="utf-8")

    if suffix in (".yaml", ".yml"):
        raw = yaml.safe_load(content) or {}
    elif suffix == ".json":
        raw = json.loads(content)
    else:
        try:
            raw = yaml.safe_load(content) or {}
        except yaml.YAMLError:
            raw = json.loads(content)

    return SyncSettings.model_validate(raw)


def find_settings() -> str | None:
    """Find a settings file in the working directory, preferring YAML.

    Returns:
        Filename of the first existing settings file, or ``None``.
    """
    for name in ("vulnsync.yaml", "vulnsync.yml", "vulnsync.json"):
        if Path(name).exists():
            return name
    return None
