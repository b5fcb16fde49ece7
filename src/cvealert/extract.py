from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

from .models import Reference, Severity, WILDCARD
from .utils import log_event

NO_DESCRIPTION = "No description available"

VENDOR_PATTERNS = [
    re.compile(pattern, re.IGNORECASE)
    for pattern in (
        r"\b(microsoft|ms)\b",
        r"\b(cisco|webex)\b",
        r"\b(apache|httpd)\b",
        r"\b(oracle|java|mysql)\b",
        r"\b(adobe|flash|acrobat)\b",
        r"\b(google|chrome|android)\b",
        r"\b(apple|ios|macos|safari)\b",
        r"\b(ibm|vmware|dell|hp|lenovo)\b",
        r"\b(linux|redhat|red hat|ubuntu|debian|centos)\b",
        r"\b(mozilla|firefox|thunderbird)\b",
        r"\b(nvidia|amd|intel)\b",
        r"\b(aws|amazon)\b",
        r"\b(sap|salesforce|servicenow)\b",
    )
]

VENDOR_ALIASES = {"ms": "microsoft"}

_CVSS_KEYS = ("cvssMetricV31", "cvssMetricV30")


@dataclass(frozen=True)
class Identifiers:
    vendors: frozenset[str]
    products: frozenset[str]


@dataclass(frozen=True)
class SeverityInfo:
    score: float
    severity: Severity
    vector: str | None


_UNKNOWN_SEVERITY = SeverityInfo(score=0.0, severity=Severity.UNKNOWN, vector=None)


def extract_identifiers(raw: dict[str, Any]) -> Identifiers:
    """Derive vendor/product sets from CPE match data, falling back to description text.

    Structured configurations are tried first at the top level, then under
    ``cve``; the description is scanned only when neither produced a vendor.
    """
    logger = logging.getLogger("cvealert.extract")
    cve_id = _cve_id(raw)
    vendors: set[str] = set()
    products: set[str] = set()
    try:
        _collect_cpe(raw.get("configurations"), vendors, products)
        if not vendors:
            cve = raw.get("cve") or {}
            _collect_cpe(cve.get("configurations"), vendors, products)
        if not vendors:
            vendors.update(_vendors_from_text(_english_description(raw)))
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "extract_identifiers_failed", cve_id=cve_id, error=exc)
    if not vendors and not products:
        log_event(logger, logging.DEBUG, "extract_identifiers_empty", cve_id=cve_id)
    return Identifiers(vendors=frozenset(vendors), products=frozenset(products))


def extract_severity(raw: dict[str, Any]) -> SeverityInfo:
    logger = logging.getLogger("cvealert.extract")
    try:
        cve = raw.get("cve") or {}
        metrics = cve.get("metrics") or {}
        for key in _CVSS_KEYS:
            data = _first_cvss_data(metrics.get(key))
            if data is None:
                continue
            return SeverityInfo(
                score=_as_score(data.get("baseScore")),
                severity=Severity.parse(data.get("baseSeverity")),
                vector=_as_vector(data.get("vectorString")),
            )
        data = _first_cvss_data(metrics.get("cvssMetricV2"))
        if data is not None:
            score = _as_score(data.get("baseScore"))
            return SeverityInfo(
                score=score,
                severity=severity_from_score(score),
                vector=_as_vector(data.get("vectorString")),
            )
    except Exception as exc:  # noqa: BLE001
        log_event(
            logger,
            logging.WARNING,
            "extract_severity_failed",
            cve_id=_cve_id(raw),
            error=exc,
        )
    return _UNKNOWN_SEVERITY


def severity_from_score(score: float) -> Severity:
    if score >= 9.0:
        return Severity.CRITICAL
    if score >= 7.0:
        return Severity.HIGH
    if score >= 4.0:
        return Severity.MEDIUM
    return Severity.LOW


def extract_description(raw: dict[str, Any]) -> str:
    try:
        text = _english_description(raw)
    except Exception as exc:  # noqa: BLE001
        log_event(
            logging.getLogger("cvealert.extract"),
            logging.WARNING,
            "extract_description_failed",
            cve_id=_cve_id(raw),
            error=exc,
        )
        text = None
    return text or NO_DESCRIPTION


def extract_references(raw: dict[str, Any]) -> tuple[Reference, ...]:
    cve = raw.get("cve") or {}
    items = cve.get("references") or []
    if not isinstance(items, list):
        return ()
    references: list[Reference] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        url = item.get("url")
        if not isinstance(url, str) or not url:
            continue
        source = item.get("source")
        references.append(Reference(url=url, source=source if isinstance(source, str) else None))
    return tuple(references)


def _cve_id(raw: dict[str, Any]) -> str:
    cve = raw.get("cve") if isinstance(raw, dict) else None
    if isinstance(cve, dict) and cve.get("id"):
        return str(cve["id"])
    return "unknown"


def _collect_cpe(configurations: Any, vendors: set[str], products: set[str]) -> None:
    if not isinstance(configurations, list):
        return
    for config in configurations:
        if not isinstance(config, dict):
            continue
        _collect_nodes(config.get("nodes"), vendors, products)


def _collect_nodes(nodes: Any, vendors: set[str], products: set[str]) -> None:
    if not isinstance(nodes, list):
        return
    for node in nodes:
        if not isinstance(node, dict):
            continue
        for match in node.get("cpeMatch") or []:
            criteria = match.get("criteria") if isinstance(match, dict) else None
            if not isinstance(criteria, str):
                continue
            # cpe:2.3:part:vendor:product:version:...
            parts = criteria.split(":")
            if len(parts) < 5:
                continue
            vendor, product = parts[3], parts[4]
            if vendor and vendor != WILDCARD:
                vendors.add(vendor.lower())
            if product and product != WILDCARD:
                products.add(product.lower())
        _collect_nodes(node.get("children"), vendors, products)


def _english_description(raw: dict[str, Any]) -> str | None:
    cve = raw.get("cve") or {}
    descriptions = cve.get("descriptions") or []
    if not isinstance(descriptions, list):
        return None
    for entry in descriptions:
        if isinstance(entry, dict) and entry.get("lang") == "en":
            value = entry.get("value")
            return value if isinstance(value, str) else None
    return None


def _vendors_from_text(text: str | None) -> Iterable[str]:
    if not text:
        return ()
    found: list[str] = []
    for pattern in VENDOR_PATTERNS:
        for match in pattern.finditer(text):
            name = match.group(0).strip().lower()
            name = VENDOR_ALIASES.get(name, name)
            found.append(re.sub(r"\s+", "_", name))
    return found


def _first_cvss_data(entries: Any) -> dict[str, Any] | None:
    if not isinstance(entries, list) or not entries:
        return None
    first = entries[0]
    if not isinstance(first, dict):
        return None
    data = first.get("cvssData")
    return data if isinstance(data, dict) else {}


def _as_score(value: Any) -> float:
    if isinstance(value, bool):
        return 0.0
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _as_vector(value: Any) -> str | None:
    return value if isinstance(value, str) and value else None
