"""Feed payload parsers.

``parse_feed`` accepts a downloaded partition payload, gzip-compressed or
not, in any of the supported formats and yields ``VulnerabilityRecord``
objects:

* NVD JSON 2.0 (``{"vulnerabilities": [{"cve": {...}}]}``)
* NVD JSON 1.1 (``{"CVE_Items": [...]}``)
* legacy NVD 1.2 XML (``<nvd><entry name="CVE-…">…</entry></nvd>``)
"""

import gzip
import json
import logging
import xml.etree.ElementTree as ET
import zlib
from collections.abc import Iterator
from pathlib import Path
from typing import IO, Any

from .cpe import build_cpe22, parse_cpe, with_version
from .errors import FeedParseError, MalformedIdentifier
from .models import Reference, VulnerabilityRecord

logger = logging.getLogger(__name__)

GZIP_MAGIC = b"\x1f\x8b"
ANY_VERSION = ("*", "-", "")


def open_payload(path: Path) -> IO[bytes]:
    """Open a payload for reading, transparently decompressing gzip."""
    with open(path, "rb") as fh:
        magic = fh.read(2)
    if magic == GZIP_MAGIC:
        return gzip.open(path, "rb")
    return open(path, "rb")


def parse_feed(path: Path) -> Iterator[VulnerabilityRecord]:
    """Parse a partition payload.

    Args:
        path: Downloaded payload.

    Yields:
        Every vulnerability in the payload, withdrawn ones included so the
        store can delete them.

    Raises:
        FeedParseError: if the payload is truncated or not a known format.
    """
    try:
        with open_payload(path) as fh:
            head = fh.peek(64)[:64].lstrip(b"\xef\xbb\xbf \t\r\n") if hasattr(fh, "peek") else b""
            if head.startswith(b"<"):
                yield from parse_nvd_xml(fh)
                return
            data = json.load(fh)
    except (OSError, EOFError, zlib.error, UnicodeDecodeError, json.JSONDecodeError, ET.ParseError) as e:
        raise FeedParseError(f"Unable to parse {path.name}: {e}") from e
    try:
        yield from parse_nvd_json(data)
    except (AttributeError, KeyError, TypeError) as e:
        raise FeedParseError(f"Unexpected record structure in {path.name}: {e}") from e


def parse_nvd_json(data: Any) -> Iterator[VulnerabilityRecord]:
    """Parse an NVD JSON 2.0 or 1.1 document already loaded into memory."""
    if not isinstance(data, dict):
        raise FeedParseError("Feed document is not a JSON object")
    if "vulnerabilities" in data:
        for item in data.get("vulnerabilities") or []:
            cve = item.get("cve") or {}
            if cve.get("id"):
                yield _parse_cve_v2(cve)
    elif "CVE_Items" in data:
        for item in data.get("CVE_Items") or []:
            record = _parse_cve_item_v11(item)
            if record is not None:
                yield record
    else:
        raise FeedParseError("Unrecognised feed format: expected 'vulnerabilities' or 'CVE_Items'")


# ─────────────────────────────────────────────────────────────────────────────
# NVD JSON 2.0
# ─────────────────────────────────────────────────────────────────────────────


def _get_primary_cvss(metric_list: list) -> dict:
    for m in metric_list:
        if m.get("type") == "Primary":
            return m
    return metric_list[0] if metric_list else {}


def _english(values: list[dict[str, Any]], key: str = "value") -> str:
    for d in values:
        if (d.get("lang") or "").lower().startswith("en") and d.get(key):
            return str(d[key]).strip()
    for d in values:
        if d.get(key):
            return str(d[key]).strip()
    return ""


def _parse_cve_v2(cve: dict[str, Any]) -> VulnerabilityRecord:
    record = VulnerabilityRecord(
        name=cve["id"].strip().upper(),
        description=_english(cve.get("descriptions") or []),
        rejected=cve.get("vulnStatus") == "Rejected",
    )

    metrics = cve.get("metrics") or {}
    v3 = _get_primary_cvss(metrics.get("cvssMetricV31") or []) or _get_primary_cvss(
        metrics.get("cvssMetricV30") or []
    )
    if v3:
        data = v3.get("cvssData") or {}
        record.cvss_v3_score = data.get("baseScore")
        record.cvss_v3_vector = data.get("vectorString")
        record.cvss_v3_severity = data.get("baseSeverity")
    v2 = _get_primary_cvss(metrics.get("cvssMetricV2") or [])
    if v2:
        data = v2.get("cvssData") or {}
        record.cvss_v2_score = data.get("baseScore")
        record.cvss_v2_vector = data.get("vectorString")
        record.cvss_v2_severity = v2.get("baseSeverity") or data.get("baseSeverity")

    for weakness in cve.get("weaknesses") or []:
        for desc in weakness.get("description") or []:
            val = desc.get("value", "")
            if val.startswith("CWE-") and val != "CWE-noinfo":
                record.cwe = val
                break
        if record.cwe:
            break

    for ref in cve.get("references") or []:
        url = ref.get("url")
        if url:
            record.references.append(Reference(source=ref.get("source") or "", url=url, name=url))

    for config in cve.get("configurations") or []:
        for node in config.get("nodes") or []:
            _add_matches(record, node.get("cpeMatch") or [], "criteria")
    return record


# ─────────────────────────────────────────────────────────────────────────────
# NVD JSON 1.1
# ─────────────────────────────────────────────────────────────────────────────


def _parse_cve_item_v11(item: dict[str, Any]) -> VulnerabilityRecord | None:
    cve = item.get("cve") or {}
    name = ((cve.get("CVE_data_meta") or {}).get("ID") or "").strip().upper()
    if not name:
        return None
    record = VulnerabilityRecord(
        name=name,
        description=_english((cve.get("description") or {}).get("description_data") or []),
    )

    impact = item.get("impact") or {}
    v3 = impact.get("baseMetricV3") or {}
    if v3:
        data = v3.get("cvssV3") or {}
        record.cvss_v3_score = data.get("baseScore")
        record.cvss_v3_vector = data.get("vectorString")
        record.cvss_v3_severity = data.get("baseSeverity")
    v2 = impact.get("baseMetricV2") or {}
    if v2:
        data = v2.get("cvssV2") or {}
        record.cvss_v2_score = data.get("baseScore")
        record.cvss_v2_vector = data.get("vectorString")
        record.cvss_v2_severity = v2.get("severity")

    for problem in (cve.get("problemtype") or {}).get("problemtype_data") or []:
        for desc in problem.get("description") or []:
            val = desc.get("value", "")
            if val.startswith("CWE-") and not record.cwe:
                record.cwe = val

    for ref in (cve.get("references") or {}).get("reference_data") or []:
        url = ref.get("url")
        if url:
            record.references.append(Reference(source=ref.get("refsource") or "", url=url, name=ref.get("name") or url))

    nodes = list((item.get("configurations") or {}).get("nodes") or [])
    while nodes:
        node = nodes.pop(0)
        _add_matches(record, node.get("cpe_match") or [], "cpe23Uri")
        nodes.extend(node.get("children") or [])
    return record


def _add_matches(record: VulnerabilityRecord, matches: list[dict[str, Any]], key: str) -> None:
    """Turn NVD ``cpeMatch`` entries into affected ranges.

    A concrete version is an exact entry.  An unversioned entry with an
    upper bound becomes a ceiling entry affecting all previous versions; an
    exclusive bound keeps the ceiling itself out of the range.  An
    unversioned entry with no upper bound covers every version.
    """
    for match in matches:
        if not match.get("vulnerable", True):
            continue
        criteria = match.get(key)
        if not criteria:
            continue
        try:
            cpe = parse_cpe(criteria)
        except MalformedIdentifier as e:
            logger.debug("Skipping range of %s: %s", record.name, e)
            continue
        if cpe.version not in (None, *ANY_VERSION):
            record.add_range(criteria, False)
            continue
        including = match.get("versionEndIncluding")
        excluding = match.get("versionEndExcluding")
        if including:
            record.add_range(with_version(criteria, including), True)
        elif excluding:
            record.add_range(with_version(criteria, excluding), True, excludes_ceiling=True)
        else:
            record.add_range(criteria, False)


# ─────────────────────────────────────────────────────────────────────────────
# Legacy NVD 1.2 XML
# ─────────────────────────────────────────────────────────────────────────────


def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def parse_nvd_xml(fh: IO[bytes]) -> Iterator[VulnerabilityRecord]:
    """Stream entries from a legacy NVD 1.2 XML feed.

    Example::

        <entry name="CVE-2012-0001" CVSS_score="9.3" severity="High">
          <desc><descript source="cve">…</descript></desc>
          <refs><ref source="MS" url="http://…">MS12-001</ref></refs>
          <vuln_soft>
            <prod vendor="microsoft" name="windows_7">
              <vers num="2.0" prev="1"/>
            </prod>
          </vuln_soft>
        </entry>
    """
    for _, elem in ET.iterparse(fh, events=("end",)):
        if _local(elem.tag) != "entry":
            continue
        name = (elem.get("name") or "").strip().upper()
        if name:
            yield _parse_xml_entry(name, elem)
        elem.clear()


def _parse_xml_entry(name: str, entry: ET.Element) -> VulnerabilityRecord:
    record = VulnerabilityRecord(name=name, rejected=entry.get("reject") == "1")
    score = entry.get("CVSS_score")
    if score:
        try:
            record.cvss_v2_score = float(score)
        except ValueError:
            logger.debug("Ignoring CVSS score %r of %s", score, name)
    record.cvss_v2_vector = entry.get("CVSS_vector")
    record.cvss_v2_severity = entry.get("severity")

    for child in entry:
        tag = _local(child.tag)
        if tag == "desc":
            for descript in child:
                if _local(descript.tag) == "descript" and descript.text:
                    record.description = descript.text.strip()
                    break
        elif tag == "refs":
            for ref in child:
                url = ref.get("url")
                if _local(ref.tag) == "ref" and url:
                    record.references.append(
                        Reference(source=ref.get("source") or "", url=url, name=(ref.text or url).strip())
                    )
        elif tag == "vuln_soft":
            for prod in child:
                vendor, product = prod.get("vendor"), prod.get("name")
                if _local(prod.tag) != "prod" or not vendor or not product:
                    continue
                for vers in prod:
                    if _local(vers.tag) != "vers":
                        continue
                    cpe = build_cpe22(vendor, product, vers.get("num") or None)
                    record.add_range(cpe, vers.get("prev") == "1")
    return record
