"""Pick structured data or the raw text body out of a transport response."""

from __future__ import annotations

from typing import Any

from zotero_manager.errors import UnexpectedResponseError

STRUCTURED_FORMATS = frozenset({"json"})


def _as_text(obj: Any) -> str | None:
    if isinstance(obj, str):
        return obj
    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")
    return None


def _text_capability(obj: Any) -> str | None:
    """Return ``obj.text`` (attribute or method) when it yields text."""
    if obj is None or isinstance(obj, (str, bytes, bytearray)):
        return None
    attr = getattr(obj, "text", None)
    if attr is None:
        return None
    if callable(attr):
        attr = attr()
    return _as_text(attr)


def extract_text(response: Any) -> str:
    """Return the exact text body of ``response``.

    Tried in order: a text capability on the response itself, the text of a
    nested ``response`` object, a data accessor (``get_data()`` or ``data``)
    holding text, and finally the response when it already is text.
    """
    text = _text_capability(response)
    if text is not None:
        return text

    inner = getattr(response, "response", None)
    text = _text_capability(inner)
    if text is not None:
        return text

    getter = getattr(response, "get_data", None)
    data = getter() if callable(getter) else getattr(response, "data", None)
    if data is not None:
        text = _as_text(data)
        if text is None:
            text = _text_capability(data)
        if text is not None:
            return text

    text = _as_text(response)
    if text is not None:
        return text
    raise UnexpectedResponseError(f"Unexpected response format: {type(response).__name__}")


def extract_data(response: Any) -> Any:
    """Return the parsed payload of a structured response."""
    parse = getattr(response, "json", None)
    if callable(parse):
        try:
            return parse()
        except ValueError as e:
            raise UnexpectedResponseError(f"Response body is not valid JSON: {e}") from e
    getter = getattr(response, "get_data", None)
    if callable(getter):
        return getter()
    if hasattr(response, "data"):
        return response.data
    if isinstance(response, (dict, list)):
        return response
    raise UnexpectedResponseError(f"Unexpected response format: {type(response).__name__}")


def is_structured(fmt: str | None) -> bool:
    return fmt is None or fmt in STRUCTURED_FORMATS


def normalize_response(response: Any, fmt: str | None = None) -> Any:
    if is_structured(fmt):
        return extract_data(response)
    return extract_text(response)
