import pytest

from exceptions import ContentUnavailable, ItemCancelled
from models import Artifact, RemoteMapping, RemoteResult
from services.retrieval import YearFallbackPolicy, fetch_with_year_fallback

from conftest import PDF_BYTES


class FakeClient:
    def __init__(self, content_year=None, message="Pedido nao encontrado"):
        self.content_year = content_year
        self.message = message
        self.calls = []

    def fetch_order(self, year, order_key, include_pdf=True):
        self.calls.append((year, order_key))
        result = RemoteResult(remote_order_code=order_key, order_year=year)
        if year == self.content_year:
            result.success = True
            result.pdf_artifacts = [Artifact(content=PDF_BYTES, sha256="h")]
        else:
            result.error_message = self.message
            result.success = self.message is None
        return result


MAPPING = RemoteMapping(local_order_code="5001", remote_order_code="900001", order_year=2023)


def test_policy_years_descending():
    assert list(YearFallbackPolicy(2025, 2).years()) == [2025, 2024, 2023]
    assert list(YearFallbackPolicy(2025, 0).years()) == [2025]


def test_policy_prefers_mapped_year_without_duplicates():
    policy = YearFallbackPolicy(2025, 2, prefer_mapped_year=True)
    assert list(policy.years(2024)) == [2024, 2025, 2023]
    assert list(policy.years(None)) == [2025, 2024, 2023]


def test_policy_without_default_year_follows_the_clock(monkeypatch):
    import services.retrieval as retrieval

    policy = YearFallbackPolicy(None, 1)
    monkeypatch.setattr(retrieval, "_current_year", lambda: 2025)
    assert list(policy.years()) == [2025, 2024]

    monkeypatch.setattr(retrieval, "_current_year", lambda: 2026)
    assert list(policy.years()) == [2026, 2025]


def test_only_oldest_year_has_content():
    client = FakeClient(content_year=2023)
    result = fetch_with_year_fallback(client, YearFallbackPolicy(2025, 2), MAPPING)
    assert result.order_year == 2023
    assert result.local_order_code == "5001"
    assert [y for y, _ in client.calls] == [2025, 2024, 2023]


def test_success_without_artifacts_keeps_falling_back():
    client = FakeClient(content_year=None, message=None)
    with pytest.raises(ContentUnavailable) as exc:
        fetch_with_year_fallback(client, YearFallbackPolicy(2025, 2), MAPPING)
    assert len(client.calls) == 3
    assert exc.value.years_tried == [2025, 2024, 2023]


def test_exhaustion_keeps_last_remote_message():
    with pytest.raises(ContentUnavailable) as exc:
        fetch_with_year_fallback(FakeClient(), YearFallbackPolicy(2025, 1), MAPPING)
    assert str(exc.value).startswith("unable to retrieve content")
    assert exc.value.last_error == "Pedido nao encontrado"


def test_check_aborts_before_remote_call():
    client = FakeClient(content_year=2023)

    def check():
        if client.calls:
            raise ItemCancelled("stop")

    with pytest.raises(ItemCancelled):
        fetch_with_year_fallback(client, YearFallbackPolicy(2025, 2), MAPPING, check=check)
    assert len(client.calls) == 1
