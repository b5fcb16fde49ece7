from __future__ import annotations

from typing import Iterable, Sequence

from .models import MatchQuality, MatchResult, VulnerabilityRecord, WatchEntry


def match_quality(
    record: VulnerabilityRecord, entries: Sequence[WatchEntry]
) -> MatchResult | None:
    """Return the best tier at which any watch entry matches the record.

    Entries are checked in order; the first entry wins ties and the scan
    stops at the first EXACT match.
    """
    best: MatchResult | None = None
    for entry in entries:
        if not entry.vendor:
            continue
        vendor_exact = _find_match(record.vendors, entry.vendor)
        if vendor_exact is None:
            continue
        if entry.is_wildcard:
            quality = MatchQuality.EXACT if vendor_exact else MatchQuality.POSSIBLE
        else:
            product_exact = _find_match(record.products, entry.product)
            if product_exact is None:
                continue
            if vendor_exact and product_exact:
                quality = MatchQuality.EXACT
            elif vendor_exact or product_exact:
                quality = MatchQuality.CLOSE
            else:
                quality = MatchQuality.POSSIBLE
        if best is None or quality.rank > best.quality.rank:
            best = MatchResult(quality=quality, entry=entry)
        if quality is MatchQuality.EXACT:
            break
    return best


def annotate(
    records: Iterable[VulnerabilityRecord], entries: Sequence[WatchEntry]
) -> list[tuple[VulnerabilityRecord, MatchResult | None]]:
    return [(record, match_quality(record, entries)) for record in records]


def meets_quality(result: MatchResult | None, min_quality: MatchQuality | None) -> bool:
    if result is None:
        return False
    if min_quality is None:
        return True
    return result.quality.rank >= min_quality.rank


def terms_match(candidate: str, term: str) -> bool:
    if not candidate or not term:
        return False
    if candidate == term or term in candidate or candidate in term:
        return True
    if candidate.replace("_", " ") == term.replace("_", " "):
        return True
    return candidate.replace("_", "") == term.replace("_", "")


def _find_match(candidates: Iterable[str], term: str) -> bool | None:
    """None when nothing matches, otherwise whether an exactly equal candidate exists."""
    matched = False
    for candidate in candidates:
        value = candidate.lower()
        if value == term:
            return True
        if terms_match(value, term):
            matched = True
    return False if matched else None
