from __future__ import annotations

import pytest

from cvealert.feed_client import FeedError


def make_item(
    cve_id: str,
    description: str = "desc",
    criteria: list[str] | None = None,
    legacy_criteria: list[str] | None = None,
    v31: tuple[float, str] | None = None,
    v2_score: float | None = None,
    status: str = "Analyzed",
) -> dict:
    cve: dict = {
        "id": cve_id,
        "vulnStatus": status,
        "published": "2025-01-01T00:00:00.000",
        "lastModified": "2025-01-02T00:00:00.000",
        "descriptions": [
            {"lang": "es", "value": "descripcion"},
            {"lang": "en", "value": description},
        ],
        "metrics": {},
        "references": [{"url": f"https://nvd.example/{cve_id}", "source": "nvd@nist.gov"}],
    }
    if v31 is not None:
        cve["metrics"]["cvssMetricV31"] = [
            {
                "cvssData": {
                    "baseScore": v31[0],
                    "baseSeverity": v31[1],
                    "vectorString": "CVSS:3.1/AV:N/AC:L",
                }
            }
        ]
    if v2_score is not None:
        cve["metrics"]["cvssMetricV2"] = [
            {"cvssData": {"baseScore": v2_score, "vectorString": "AV:N/AC:L/Au:N"}}
        ]
    if legacy_criteria:
        cve["configurations"] = [
            {"nodes": [{"cpeMatch": [{"criteria": value} for value in legacy_criteria]}]}
        ]
    item: dict = {"cve": cve}
    if criteria:
        item["configurations"] = [
            {"nodes": [{"cpeMatch": [{"criteria": value} for value in criteria]}]}
        ]
    return item


class FakeFeedClient:
    def __init__(
        self,
        by_keyword: dict[str, list[dict]] | None = None,
        recent: list[dict] | None = None,
        fail_recent: bool = False,
    ) -> None:
        self.by_keyword = by_keyword or {}
        self.recent = recent or []
        self.fail_recent = fail_recent
        self.keyword_calls: list[tuple] = []
        self.fetch_all_calls: list[dict] = []

    def build_params(self, start, end, start_index=0, keyword=None):
        return {"start": start, "end": end, "startIndex": start_index, "keyword": keyword}

    def fetch_keyword(self, keyword, start, end):
        self.keyword_calls.append((keyword, start, end))
        return list(self.by_keyword.get(keyword, []))

    def fetch_all(self, params):
        self.fetch_all_calls.append(params)
        if self.fail_recent:
            raise FeedError("feed returned HTTP 503", status=503)
        yield from self.recent


@pytest.fixture(autouse=True)
def _isolated_state(tmp_path, monkeypatch):
    monkeypatch.delenv("CA_DB_URL", raising=False)
    monkeypatch.delenv("CA_ADMIN_TOKEN", raising=False)
    monkeypatch.delenv("NVD_API_KEY", raising=False)
    monkeypatch.setenv("CA_DATA_DIR", str(tmp_path / "data"))
