from __future__ import annotations

import httpx
import pytest

from zotero_manager.errors import UnexpectedResponseError
from zotero_manager.responses import extract_data, extract_text, normalize_response


class _WithTextMethod:
    def text(self) -> str:
        return "@article{a}"


class _Wrapper:
    def __init__(self, inner) -> None:
        self.response = inner


class _WithData:
    def __init__(self, data) -> None:
        self.data = data


class _WithGetData:
    def get_data(self):
        return b"TY  - JOUR"


def test_extract_text_prefers_own_text_attribute() -> None:
    response = httpx.Response(200, text="@article{key,\n  title = {X}\n}")
    assert extract_text(response) == "@article{key,\n  title = {X}\n}"


def test_extract_text_calls_text_method() -> None:
    assert extract_text(_WithTextMethod()) == "@article{a}"


def test_extract_text_falls_back_to_nested_response() -> None:
    assert extract_text(_Wrapper(httpx.Response(200, text="nested"))) == "nested"


def test_extract_text_uses_data_accessors() -> None:
    assert extract_text(_WithData("from data")) == "from data"
    assert extract_text(_WithGetData()) == "TY  - JOUR"


def test_extract_text_accepts_plain_strings_and_bytes() -> None:
    assert extract_text("raw") == "raw"
    assert extract_text(b"raw") == "raw"


def test_extract_text_preserves_empty_body() -> None:
    assert extract_text(httpx.Response(200, text="")) == ""


def test_extract_text_rejects_unknown_shapes() -> None:
    with pytest.raises(UnexpectedResponseError):
        extract_text(42)
    with pytest.raises(UnexpectedResponseError):
        extract_text(_WithData({"not": "text"}))


def test_extract_data_parses_json_and_rejects_garbage() -> None:
    assert extract_data(httpx.Response(200, json=[{"key": "A"}])) == [{"key": "A"}]
    assert extract_data({"key": "A"}) == {"key": "A"}
    with pytest.raises(UnexpectedResponseError):
        extract_data(httpx.Response(200, text="<html>"))


def test_normalize_response_switches_on_format() -> None:
    response = httpx.Response(200, text='[{"id": "A"}]')
    assert normalize_response(response, "json") == [{"id": "A"}]
    assert normalize_response(response, None) == [{"id": "A"}]
    assert normalize_response(response, "csljson") == '[{"id": "A"}]'
