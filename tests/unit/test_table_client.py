from __future__ import annotations

import pytest

from fuelmap.common.config_loader import BackendConfig
from fuelmap.common.errors import MalformedResponseError, TransientFetchError
from fuelmap.harvest.table_client import RemoteTableClient


class FakeHttpClient:
    def __init__(self, pages: dict[str, object]):
        self.pages = pages
        self.calls: list[dict] = []

    def get_json(self, url, *, params=None, headers=None, timeout=None, max_attempts=None):
        self.calls.append({"url": url, "params": params, "headers": headers, "timeout": timeout, "max_attempts": max_attempts})
        return self.pages[url]

    def close(self):
        pass


def _backend(**overrides) -> BackendConfig:
    values = {
        "api_url": "https://rows.example.test/api",
        "stations_table_id": 11,
        "prices_table_id": 12,
        "token": "secret",
        "auth_scheme": "Token",
        "page_size": 2,
        "max_pages": 10,
        "rate_limit_per_sec": 0,
    }
    values.update(overrides)
    return BackendConfig(**values)


FIRST = "https://rows.example.test/api/database/rows/table/11/"
SECOND = "https://rows.example.test/api/database/rows/table/11/?page=2&size=2&user_field_names=true"


def test_fetch_table_follows_next_links_and_sends_auth_header():
    http = FakeHttpClient(
        {
            FIRST: {"count": 3, "next": SECOND, "results": [{"id": 1}, {"id": 2}]},
            SECOND: {"count": 3, "next": None, "results": [{"id": 3}]},
        }
    )
    client = RemoteTableClient(_backend(), http)

    fetch = client.fetch_table(11)

    assert [row["id"] for row in fetch.rows] == [1, 2, 3]
    assert fetch.pages == 2
    assert fetch.complete
    assert http.calls[0]["params"] == {"user_field_names": "true", "size": 2}
    assert http.calls[0]["headers"] == {"Authorization": "Token secret"}
    assert http.calls[1]["url"] == SECOND
    assert http.calls[1]["params"] is None


def test_fetch_table_resolves_relative_next_links():
    http = FakeHttpClient(
        {
            FIRST: {"next": "?page=2&size=2&user_field_names=true", "results": [{"id": 1}]},
            SECOND: {"next": None, "results": [{"id": 2}]},
        }
    )
    rows = RemoteTableClient(_backend(), http).fetch_all_rows(11)
    assert [row["id"] for row in rows] == [1, 2]


def test_fetch_table_uses_public_token_instead_of_header():
    http = FakeHttpClient(
        {
            FIRST: {"next": SECOND, "results": [{"id": 1}]},
            SECOND: {"next": None, "results": []},
        }
    )
    client = RemoteTableClient(_backend(public_token="share-123"), http)

    client.fetch_table(11)

    assert http.calls[0]["headers"] == {}
    assert http.calls[0]["params"]["public_token"] == "share-123"
    assert http.calls[1]["params"] == {"public_token": "share-123"}


def test_fetch_table_accepts_bare_row_list():
    http = FakeHttpClient({FIRST: [{"id": 1}, {"id": 2}]})
    fetch = RemoteTableClient(_backend(), http).fetch_table(11)
    assert len(fetch.rows) == 2
    assert fetch.pages == 1


def test_fetch_table_skips_page_without_results_and_marks_incomplete():
    http = FakeHttpClient(
        {
            FIRST: {"next": SECOND, "detail": "oops"},
            SECOND: {"next": None, "results": [{"id": 3}, "not-a-row"]},
        }
    )
    fetch = RemoteTableClient(_backend(), http).fetch_table(11)

    assert [row["id"] for row in fetch.rows] == [3]
    assert fetch.skipped_pages == 1
    assert fetch.skipped_rows == 1
    assert not fetch.complete


def test_fetch_table_detects_pagination_loop():
    http = FakeHttpClient({FIRST: {"next": FIRST, "results": [{"id": 1}]}})
    client = RemoteTableClient(_backend(), http)

    with pytest.raises(MalformedResponseError):
        client.fetch_table(11)
    assert len(http.calls) <= 3


def test_fetch_table_enforces_max_pages():
    pages = {}
    for number in range(1, 6):
        url = FIRST if number == 1 else f"{FIRST}?page={number}"
        pages[url] = {"next": f"{FIRST}?page={number + 1}", "results": [{"id": number}]}
    http = FakeHttpClient(pages)

    with pytest.raises(MalformedResponseError):
        RemoteTableClient(_backend(max_pages=3), http).fetch_table(11)
    assert len(http.calls) == 3


def test_fetch_table_rejects_unexpected_payload_type():
    http = FakeHttpClient({FIRST: "<html>maintenance</html>"})
    with pytest.raises(MalformedResponseError):
        RemoteTableClient(_backend(), http).fetch_table(11)


def test_fetch_table_propagates_http_errors():
    class FailingHttp(FakeHttpClient):
        def get_json(self, url, *, params=None, headers=None, timeout=None):
            raise MalformedResponseError("Invalid JSON payload", status=200)

    with pytest.raises(MalformedResponseError):
        RemoteTableClient(_backend(), FailingHttp({})).fetch_table(11)


def test_fetch_all_rows_raises_when_pages_were_skipped():
    http = FakeHttpClient({FIRST: {"results": "oops", "next": None}})

    with pytest.raises(MalformedResponseError):
        RemoteTableClient(_backend(), http).fetch_all_rows(11)


def test_check_table_requests_one_row_without_retrying():
    http = FakeHttpClient({FIRST: {"count": 40, "next": SECOND, "results": [{"id": 1}]}})

    result = RemoteTableClient(_backend(), http).check_table(11, timeout_seconds=2)

    assert result["connected"] is True
    assert result["status"] == "ok"
    assert result["table_id"] == 11
    assert len(http.calls) == 1
    assert http.calls[0]["params"] == {"user_field_names": "true", "size": 1}
    assert http.calls[0]["headers"] == {"Authorization": "Token secret"}
    assert http.calls[0]["max_attempts"] == 1
    assert http.calls[0]["timeout"].read == 2


def test_check_table_reports_unreachable_backend():
    class DownHttp(FakeHttpClient):
        def get_json(self, url, **kwargs):
            raise TransientFetchError("ConnectionError while requesting", status=None)

    result = RemoteTableClient(_backend(), DownHttp({})).check_table(11)

    assert result == {
        "connected": False,
        "error": "ConnectionError while requesting",
        "error_code": "TRANSIENT_FETCH_ERROR",
        "table_id": 11,
    }
