from __future__ import annotations

import pytest

from carlog_import.excel.headers import (
    HEADER_ALIASES,
    build_header_map,
    fallback_key,
    normalize_header,
)
from carlog_import.models.record import CANONICAL_FIELDS


@pytest.mark.parametrize(
    "raw",
    ["Received Date  \n", "received date", "Received Date (MM/DD)", "RECEIVED\r\nDATE", "  Received   Date"],
)
def test_received_date_spellings_normalize_identically(raw):
    assert normalize_header(raw) == "received date"
    assert build_header_map([raw]).mapping == {raw: "receivedDate"}


def test_normalize_header_removes_parenthesized_segments():
    assert normalize_header("Location (as applicable)") == "location"
    assert normalize_header("Internal CAR #") == "internal car #"


def test_alias_targets_are_canonical_fields():
    assert set(HEADER_ALIASES.values()) <= CANONICAL_FIELDS


def test_build_header_map_reports_unmatched():
    result = build_header_map(["Internal CAR #", "Status", "Mystery Column"])
    assert result.mapping == {"Internal CAR #": "internalCarNumber", "Status": "status"}
    assert result.unmatched == ["Mystery Column"]
    assert result.fallback is False
    assert [d.kind for d in result.diagnostics] == ["UNMATCHED_HEADERS"]
    assert result.diagnostics[0].headers == ("Mystery Column",)


def test_placeholder_headers_are_not_reported():
    result = build_header_map(["Status", "__EMPTY", "__EMPTY_1"])
    assert result.mapping == {"Status": "status"}
    assert result.diagnostics == []


def test_many_to_one_aliases():
    result = build_header_map(["Cust. CAR #", "Reference #'s (Customer)"])
    assert result.mapping == {
        "Cust. CAR #": "customerCarNumber",
        "Reference #'s (Customer)": "customerCarNumber",
    }


def test_fallback_when_nothing_matches():
    result = build_header_map(["Foo Bar", "Widget-ID", "__EMPTY", ""])
    assert result.fallback is True
    assert result.matched == 0
    assert result.mapping == {"Foo Bar": "foobar", "Widget-ID": "widgetid"}
    kinds = [d.kind for d in result.diagnostics]
    assert "HEADER_FALLBACK" in kinds
    assert "UNMATCHED_HEADERS" in kinds


def test_fallback_key():
    assert fallback_key("Part #  (A)") == "parta"
