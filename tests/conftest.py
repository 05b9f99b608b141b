"""Shared fixtures: settings rooted in tmp_path, an open store, feed builders."""

import gzip
import json
from pathlib import Path
from typing import Any

import pytest

from vulnsync.config import LockSettings, SyncSettings
from vulnsync.store import VulnStore


@pytest.fixture
def settings(tmp_path: Path) -> SyncSettings:
    return SyncSettings(
        data_directory=tmp_path / "data",
        start_year=2021,
        end_year=2022,
        cve_base_url="https://feeds.example.com/nvdcve-2.0-{year}.json.gz",
        cve_modified_url="https://feeds.example.com/nvdcve-2.0-modified.json.gz",
        max_download_threads=2,
        max_processing_threads=2,
        lock=LockSettings(retry_seconds=0.01, max_attempts=5),
    )


@pytest.fixture
def store(tmp_path: Path):
    s = VulnStore(tmp_path / "test.db", distinct_major_products=[("apache", "struts")]).open()
    yield s
    s.close()


@pytest.fixture
def make_cve():
    """Build an NVD JSON 2.0 ``cve`` object."""

    def _make(
        cve_id: str,
        description: str = "A test vulnerability.",
        matches: list[dict[str, Any]] | None = None,
        status: str = "Analyzed",
        score: float | None = 7.5,
    ) -> dict[str, Any]:
        cve: dict[str, Any] = {
            "id": cve_id,
            "vulnStatus": status,
            "descriptions": [
                {"lang": "es", "value": "Una vulnerabilidad."},
                {"lang": "en", "value": description},
            ],
            "metrics": {},
            "weaknesses": [{"description": [{"lang": "en", "value": "CWE-79"}]}],
            "references": [{"url": f"https://example.com/{cve_id}", "source": "cve@mitre.org"}],
            "configurations": [{"nodes": [{"operator": "OR", "cpeMatch": matches or []}]}],
        }
        if score is not None:
            cve["metrics"]["cvssMetricV31"] = [
                {
                    "type": "Primary",
                    "cvssData": {
                        "baseScore": score,
                        "baseSeverity": "HIGH",
                        "vectorString": "CVSS:3.1/AV:N/AC:L/PR:N/UI:N/S:U/C:H/I:N/A:N",
                    },
                }
            ]
        return cve

    return _make


@pytest.fixture
def write_feed(tmp_path: Path):
    """Write an NVD JSON 2.0 document holding ``cves`` to a (gzip) file."""

    def _write(name: str, cves: list[dict[str, Any]], compress: bool = True) -> Path:
        doc = {"format": "NVD_CVE", "version": "2.0", "vulnerabilities": [{"cve": c} for c in cves]}
        payload = json.dumps(doc).encode("utf-8")
        path = tmp_path / name
        path.write_bytes(gzip.compress(payload) if compress else payload)
        return path

    return _write


def cpe_match(criteria: str, vulnerable: bool = True, **bounds: str) -> dict[str, Any]:
    return {"vulnerable": vulnerable, "criteria": criteria, **bounds}


@pytest.fixture
def match():
    return cpe_match
