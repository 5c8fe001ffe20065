from __future__ import annotations

from tracksync._redact import redact_for_log


def test_redact_for_log_redacts_sensitive_keys() -> None:
    payload = {
        "code": "0",
        "access-token": "TOKEN",
        "headers": {"Authorization": "Bearer abc", "accept": "application/json"},
        "password": "pw",
        "nested": {"accessToken": "deadbeef"},
    }

    redacted = redact_for_log(payload)
    assert redacted["code"] == "0"
    assert redacted["access-token"] == "<redacted>"
    assert redacted["headers"]["Authorization"] == "<redacted>"
    assert redacted["headers"]["accept"] == "application/json"
    assert redacted["password"] == "<redacted>"
    assert redacted["nested"]["accessToken"] == "<redacted>"


def test_redact_for_log_truncates_long_strings() -> None:
    long_value = "x" * 600
    redacted = redact_for_log({"value": long_value}, max_string=10)
    assert redacted["value"].startswith("x" * 10)
    assert "<truncated>" in redacted["value"]


def test_redact_for_log_trims_record_pages() -> None:
    page = {"data": {"total": 2500, "dataList": [{"weUserId": i} for i in range(1000)]}}

    redacted = redact_for_log(page, max_items=3)

    items = redacted["data"]["dataList"]
    assert len(items) == 4
    assert items[-1] == "<+997 more>"
    assert redacted["data"]["total"] == 2500
