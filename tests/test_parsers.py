"""Unit tests for vulnsync.parsers — NVD JSON 2.0, JSON 1.1 and legacy XML feeds."""

import gzip
import json

import pytest

from vulnsync.errors import ErrorKind, FeedParseError
from vulnsync.models import AffectedRange
from vulnsync.parsers import parse_feed

XML_FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<nvd xmlns="http://nvd.nist.gov/feeds/cve/1.2" nvd_xml_version="1.2">
  <entry type="CVE" name="CVE-2012-0001" CVSS_score="9.3" severity="High"
         CVSS_vector="(AV:N/AC:M/Au:N/C:C/I:C/A:C)">
    <desc><descript source="cve">Kernel flaw.</descript></desc>
    <refs><ref source="MS" url="http://example.com/ms12-001">MS12-001</ref></refs>
    <vuln_soft>
      <prod name="windows_7" vendor="microsoft">
        <vers num="" />
        <vers num="2.0" prev="1" />
      </prod>
    </vuln_soft>
  </entry>
  <entry type="CVE" name="CVE-2012-0002" reject="1">
    <desc><descript source="cve">** REJECT ** Duplicate.</descript></desc>
  </entry>
</nvd>
"""


# ── NVD JSON 2.0 ─────────────────────────────────────────────────────────────


class TestParseJson20:
    def test_basic_fields(self, make_cve, write_feed):
        path = write_feed("feed.json.gz", [make_cve("CVE-2021-0001", description="Buffer overflow.")])
        [record] = list(parse_feed(path))
        assert record.name == "CVE-2021-0001"
        assert record.description == "Buffer overflow."
        assert record.cwe == "CWE-79"
        assert record.cvss_v3_score == 7.5
        assert record.cvss_v3_severity == "HIGH"
        assert record.references[0].url == "https://example.com/CVE-2021-0001"
        assert not record.is_withdrawn

    def test_uncompressed(self, make_cve, write_feed):
        path = write_feed("feed.json", [make_cve("CVE-2021-0001")], compress=False)
        assert [r.name for r in parse_feed(path)] == ["CVE-2021-0001"]

    def test_rejected(self, make_cve, write_feed):
        path = write_feed("feed.json.gz", [make_cve("CVE-2021-0002", status="Rejected")])
        assert next(parse_feed(path)).is_withdrawn

    def test_exact_version(self, make_cve, write_feed, match):
        cve = make_cve("CVE-2021-0003", matches=[match("cpe:2.3:a:acme:widget:1.2:*:*:*:*:*:*:*")])
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert record.ranges == [AffectedRange("cpe:2.3:a:acme:widget:1.2:*:*:*:*:*:*:*", False)]

    def test_end_including_becomes_ceiling(self, make_cve, write_feed, match):
        cve = make_cve(
            "CVE-2021-0004",
            matches=[match("cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*", versionEndIncluding="2.5")],
        )
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert record.ranges == [AffectedRange("cpe:2.3:a:acme:widget:2.5:*:*:*:*:*:*:*", True)]

    def test_end_excluding_becomes_exclusive_ceiling(self, make_cve, write_feed, match):
        cve = make_cve(
            "CVE-2021-0005",
            matches=[
                match(
                    "cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*",
                    versionStartIncluding="2.0",
                    versionEndExcluding="2.6",
                )
            ],
        )
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert record.ranges == [AffectedRange("cpe:2.3:a:acme:widget:2.6:*:*:*:*:*:*:*", True, excludes_ceiling=True)]

    def test_unbounded_is_wildcard(self, make_cve, write_feed, match):
        cve = make_cve("CVE-2021-0006", matches=[match("cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*")])
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert record.ranges == [AffectedRange("cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*", False)]

    def test_not_vulnerable_dropped(self, make_cve, write_feed, match):
        cve = make_cve(
            "CVE-2021-0007",
            matches=[
                match("cpe:2.3:o:linux:linux_kernel:-:*:*:*:*:*:*:*", vulnerable=False),
                match("cpe:2.3:a:acme:widget:1.0:*:*:*:*:*:*:*"),
            ],
        )
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert [r.cpe for r in record.ranges] == ["cpe:2.3:a:acme:widget:1.0:*:*:*:*:*:*:*"]

    def test_v2_and_v30_metrics(self, make_cve, write_feed):
        cve = make_cve("CVE-2021-0008", score=None)
        cve["metrics"] = {
            "cvssMetricV30": [{"type": "Secondary", "cvssData": {"baseScore": 6.1, "baseSeverity": "MEDIUM"}}],
            "cvssMetricV2": [
                {"type": "Primary", "baseSeverity": "LOW", "cvssData": {"baseScore": 2.1, "vectorString": "AV:L"}}
            ],
        }
        [record] = list(parse_feed(write_feed("f.json.gz", [cve])))
        assert record.cvss_v3_score == 6.1
        assert (record.cvss_v2_score, record.cvss_v2_vector, record.cvss_v2_severity) == (2.1, "AV:L", "LOW")


# ── NVD JSON 1.1 ─────────────────────────────────────────────────────────────


class TestParseJson11:
    def test_cve_items(self, tmp_path):
        doc = {
            "CVE_data_type": "CVE",
            "CVE_Items": [
                {
                    "cve": {
                        "CVE_data_meta": {"ID": "CVE-2019-0001"},
                        "problemtype": {"problemtype_data": [{"description": [{"value": "CWE-400"}]}]},
                        "references": {
                            "reference_data": [{"url": "https://example.com/a", "name": "A", "refsource": "MISC"}]
                        },
                        "description": {"description_data": [{"lang": "en", "value": "Denial of service."}]},
                    },
                    "configurations": {
                        "nodes": [
                            {
                                "operator": "AND",
                                "children": [
                                    {
                                        "cpe_match": [
                                            {
                                                "vulnerable": True,
                                                "cpe23Uri": "cpe:2.3:a:acme:widget:*:*:*:*:*:*:*:*",
                                                "versionEndIncluding": "3.1",
                                            }
                                        ]
                                    }
                                ],
                            }
                        ]
                    },
                    "impact": {
                        "baseMetricV3": {"cvssV3": {"baseScore": 7.5, "baseSeverity": "HIGH"}},
                        "baseMetricV2": {"cvssV2": {"baseScore": 5.0}, "severity": "MEDIUM"},
                    },
                }
            ],
        }
        path = tmp_path / "nvdcve-1.1-2019.json.gz"
        path.write_bytes(gzip.compress(json.dumps(doc).encode()))
        [record] = list(parse_feed(path))
        assert record.name == "CVE-2019-0001"
        assert record.description == "Denial of service."
        assert record.cwe == "CWE-400"
        assert record.references[0].name == "A"
        assert record.cvss_v2_severity == "MEDIUM"
        assert record.ranges == [AffectedRange("cpe:2.3:a:acme:widget:3.1:*:*:*:*:*:*:*", True)]


# ── legacy XML ───────────────────────────────────────────────────────────────


class TestParseXml:
    def test_entries(self, tmp_path):
        path = tmp_path / "nvdcve-2012.xml.gz"
        path.write_bytes(gzip.compress(XML_FEED))
        first, second = list(parse_feed(path))

        assert first.name == "CVE-2012-0001"
        assert first.description == "Kernel flaw."
        assert first.cvss_v2_score == 9.3
        assert first.cvss_v2_severity == "High"
        assert first.references[0].name == "MS12-001"
        assert first.ranges == [
            AffectedRange("cpe:/a:microsoft:windows_7", False),
            AffectedRange("cpe:/a:microsoft:windows_7:2.0", True),
        ]
        assert second.is_withdrawn

    def test_uncompressed(self, tmp_path):
        path = tmp_path / "nvdcve-2012.xml"
        path.write_bytes(XML_FEED)
        assert len(list(parse_feed(path))) == 2


# ── errors ───────────────────────────────────────────────────────────────────


class TestParseErrors:
    def test_truncated_gzip(self, make_cve, write_feed):
        path = write_feed("f.json.gz", [make_cve("CVE-2021-0001")])
        path.write_bytes(path.read_bytes()[:20])
        with pytest.raises(FeedParseError) as exc_info:
            list(parse_feed(path))
        assert exc_info.value.kind is ErrorKind.TRANSIENT_NETWORK

    def test_not_json(self, tmp_path):
        path = tmp_path / "f.json"
        path.write_text("<html>Service Unavailable", encoding="utf-8")
        with pytest.raises(FeedParseError):
            list(parse_feed(path))

    def test_unknown_document(self, tmp_path):
        path = tmp_path / "f.json"
        path.write_text(json.dumps({"results": []}), encoding="utf-8")
        with pytest.raises(FeedParseError, match="Unrecognised"):
            list(parse_feed(path))

    def test_empty_file(self, tmp_path):
        path = tmp_path / "f.json"
        path.write_bytes(b"")
        with pytest.raises(FeedParseError):
            list(parse_feed(path))
