from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

WILDCARD = "*"


class Severity(str, Enum):
    CRITICAL = "CRITICAL"
    HIGH = "HIGH"
    MEDIUM = "MEDIUM"
    LOW = "LOW"
    UNKNOWN = "UNKNOWN"

    @classmethod
    def parse(cls, value: object) -> "Severity":
        if not isinstance(value, str):
            return cls.UNKNOWN
        try:
            return cls(value.strip().upper())
        except ValueError:
            return cls.UNKNOWN


class MatchQuality(str, Enum):
    EXACT = "EXACT"
    CLOSE = "CLOSE"
    POSSIBLE = "POSSIBLE"

    @property
    def rank(self) -> int:
        return {"EXACT": 3, "CLOSE": 2, "POSSIBLE": 1}[self.value]


@dataclass(frozen=True)
class Reference:
    url: str
    source: str | None


@dataclass(frozen=True)
class VulnerabilityRecord:
    cve_id: str
    description: str
    vendors: frozenset[str]
    products: frozenset[str]
    cvss_score: float
    severity: Severity
    cvss_vector: str | None
    published_at: str | None
    last_modified_at: str | None
    references: tuple[Reference, ...] = ()
    collected_at: str | None = None
    reprocessed_at: str | None = None
    vuln_status: str | None = None


@dataclass(frozen=True)
class WatchEntry:
    vendor: str
    product: str = WILDCARD

    @classmethod
    def create(cls, vendor: object, product: object = None) -> "WatchEntry":
        vendor_norm = str(vendor or "").strip().lower()
        product_norm = str(product or "").strip().lower() or WILDCARD
        return cls(vendor=vendor_norm, product=product_norm)

    @property
    def is_wildcard(self) -> bool:
        return self.product == WILDCARD


@dataclass(frozen=True)
class MatchResult:
    quality: MatchQuality
    entry: WatchEntry


@dataclass(frozen=True)
class Subscriber:
    id: str
    email: str | None
    display_name: str | None
    notifications_enabled: bool


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, object]
    result: dict[str, object] | None
    requested_at: str
    started_at: str | None
    finished_at: str | None
    locked_by: str | None
    locked_at: str | None
    error: str | None
