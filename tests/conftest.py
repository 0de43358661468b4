"""Shared fixtures: an in-memory Zotero Web API behind httpx.MockTransport."""

from __future__ import annotations

import dataclasses
import json
import re
from pathlib import Path
from typing import Any

import httpx
import pytest

from zotero_manager.cache import CacheManager
from zotero_manager.client import ZoteroClient
from zotero_manager.config import ZoteroConfig
from zotero_manager.retry import RetryController

BASE_URL = "https://api.zotero.test"
LIB = "/users/1"
FIXTURE_PDF = Path(__file__).parent / "fixtures" / "two_pages.pdf"


class FakeClock:
    """Monotonic clock that only moves when ``sleep`` is awaited."""

    def __init__(self, now: float = 1000.0) -> None:
        self.now = now
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class FakeZotero:
    """Just enough of the Zotero Web API v3 for the client's code paths."""

    def __init__(self) -> None:
        self.library_version = 0
        self.items: dict[str, dict[str, Any]] = {}
        self.collections: dict[str, dict[str, Any]] = {}
        self.fulltext: dict[str, dict[str, Any]] = {}
        self.requests: list[httpx.Request] = []
        self._scripted: list[httpx.Response] = []
        self._seq = 0

    # -- seeding -----------------------------------------------------------

    def _new_key(self) -> str:
        self._seq += 1
        return f"K{self._seq:07d}"

    def _bump(self) -> int:
        self.library_version += 1
        return self.library_version

    def add_item(self, title: str = "Untitled", *, tags: list[str] | None = None, item_type: str = "journalArticle", **fields: Any) -> str:
        key = self._new_key()
        version = self._bump()
        data = {
            "key": key,
            "version": version,
            "itemType": item_type,
            "title": title,
            "creators": [],
            "tags": [{"tag": t} for t in tags or []],
            "collections": [],
        }
        data.update(fields)
        self.items[key] = {"key": key, "version": version, "data": data, "meta": {}}
        return key

    def add_collection(self, name: str, parent: str | None = None) -> str:
        key = self._new_key()
        version = self._bump()
        data = {"key": key, "version": version, "name": name, "parentCollection": parent or False}
        self.collections[key] = {"key": key, "version": version, "data": data, "meta": {"numItems": 0}}
        return key

    def fail_next(self, count: int, status: int, headers: dict[str, str] | None = None) -> None:
        for _ in range(count):
            self._scripted.append(httpx.Response(status, headers=headers or {}, text=f"scripted {status}"))

    # -- inspection --------------------------------------------------------

    def calls(self, method: str | None = None, path: str | None = None) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if (method is None or r.method == method) and (path is None or r.url.path == path)
        ]

    # -- transport ---------------------------------------------------------

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self._scripted:
            return self._scripted.pop(0)
        path = request.url.path
        params = request.url.params
        method = request.method

        if path == "/items/new":
            return self._json({"itemType": params.get("itemType"), "title": "", "creators": [], "tags": [], "collections": [], "DOI": ""})

        if not path.startswith(LIB):
            return httpx.Response(404, text="Not found")
        rest = path[len(LIB):]

        if rest == "/items":
            if method == "GET":
                return self._list_items(list(self.items.values()), params)
            if method == "POST":
                return self._create(self.items, json.loads(request.content), kind="item")
            if method == "DELETE":
                return self._delete_items(request, params.get("itemKey", "").split(","))
        if rest == "/collections":
            if method == "GET":
                return self._page([self.collections[k] for k in self.collections], params)
            if method == "POST":
                return self._create(self.collections, json.loads(request.content), kind="collection")
        if rest == "/tags" and method == "GET":
            return self._page(self._all_tags(), params)

        m = re.fullmatch(r"/collections/(\w+)/items", rest)
        if m:
            coll = m.group(1)
            members = [i for i in self.items.values() if coll in i["data"].get("collections", [])]
            return self._list_items(members, params)
        m = re.fullmatch(r"/collections/(\w+)", rest)
        if m:
            return self._object(self.collections, m.group(1), request)
        m = re.fullmatch(r"/items/(\w+)/fulltext", rest)
        if m:
            text = self.fulltext.get(m.group(1))
            if text is None:
                return httpx.Response(404, text="Not found")
            return self._json(text)
        m = re.fullmatch(r"/items/(\w+)/children", rest)
        if m:
            children = [i for i in self.items.values() if i["data"].get("parentItem") == m.group(1)]
            return self._json(children)
        m = re.fullmatch(r"/items/(\w+)", rest)
        if m:
            key = m.group(1)
            fmt = params.get("format", "json")
            if method == "GET" and fmt != "json":
                if key not in self.items:
                    return httpx.Response(404, text="Not found")
                return httpx.Response(200, text=self._export(self.items[key], fmt))
            return self._object(self.items, key, request)
        return httpx.Response(404, text="Not found")

    # -- helpers -----------------------------------------------------------

    def _json(self, body: Any, status: int = 200, **headers: str) -> httpx.Response:
        headers.setdefault("Last-Modified-Version", str(self.library_version))
        return httpx.Response(status, json=body, headers=headers)

    def _page(self, rows: list[Any], params: httpx.QueryParams) -> httpx.Response:
        start = int(params.get("start", 0))
        limit = int(params.get("limit", 25))
        page = rows[start:start + limit]
        return self._json(page, **{"Total-Results": str(len(rows))})

    def _matches(self, item: dict[str, Any], params: httpx.QueryParams) -> bool:
        data = item["data"]
        keys = params.get("itemKey")
        if keys and item["key"] not in keys.split(","):
            return False
        item_type = params.get("itemType")
        if item_type and data.get("itemType") != item_type:
            return False
        names = {t["tag"] for t in data.get("tags", [])}
        for t in params.get_list("tag"):
            if t.startswith("\\-"):
                t = t[1:]
            elif t.startswith("-"):
                if t[1:] in names:
                    return False
                continue
            if t not in names:
                return False
        q = (params.get("q") or "").lower()
        if q:
            if params.get("qmode") == "everything":
                haystack = " ".join(str(v) for v in data.values() if isinstance(v, str))
            else:
                haystack = str(data.get("title", ""))
            if q not in haystack.lower():
                return False
        return True

    def _list_items(self, pool: list[dict[str, Any]], params: httpx.QueryParams) -> httpx.Response:
        rows = [i for i in pool if self._matches(i, params)]
        fmt = params.get("format", "json")
        if fmt == "versions":
            return self._json({i["key"]: i["version"] for i in rows})
        if fmt == "bib":
            entries = "".join(
                f'<div class="csl-entry">{i["data"].get("title")} &amp; co. ({params.get("style")})</div>'
                for i in rows
            )
            return httpx.Response(200, text=f'<div class="csl-bib-body">{entries}</div>')
        if fmt != "json":
            start = int(params.get("start", 0))
            limit = int(params.get("limit", 25))
            body = "\n".join(self._export(i, fmt) for i in rows[start:start + limit])
            return httpx.Response(200, text=body)
        return self._page(rows, params)

    @staticmethod
    def _export(item: dict[str, Any], fmt: str) -> str:
        if fmt == "bibtex":
            return "@article{%s,\n  title = {%s}\n}" % (item["key"], item["data"].get("title"))
        if fmt == "ris":
            return "TY  - JOUR\nTI  - %s\nER  - " % item["data"].get("title")
        return json.dumps([{"id": item["key"], "title": item["data"].get("title")}])

    def _all_tags(self) -> list[dict[str, Any]]:
        seen: dict[str, dict[str, Any]] = {}
        for item in self.items.values():
            for t in item["data"].get("tags", []):
                seen.setdefault(t["tag"], {"tag": t["tag"], "meta": {"type": t.get("type", 0), "numItems": 0}})
                seen[t["tag"]]["meta"]["numItems"] += 1
        return list(seen.values())

    def _create(self, store: dict[str, dict[str, Any]], payload: list[dict[str, Any]], *, kind: str) -> httpx.Response:
        result: dict[str, Any] = {"successful": {}, "success": {}, "unchanged": {}, "failed": {}}
        for i, obj in enumerate(payload):
            if kind == "item" and not obj.get("itemType"):
                result["failed"][str(i)] = {"key": None, "code": 400, "message": "'itemType' property not provided"}
                continue
            key = self._new_key()
            version = self._bump()
            data = dict(obj, key=key, version=version)
            entry = {"key": key, "version": version, "data": data, "meta": {}}
            store[key] = entry
            result["successful"][str(i)] = entry
            result["success"][str(i)] = key
        return self._json(result)

    def _object(self, store: dict[str, dict[str, Any]], key: str, request: httpx.Request) -> httpx.Response:
        entry = store.get(key)
        if entry is None:
            return httpx.Response(404, text="Not found")
        if request.method == "GET":
            return self._json(entry)
        expected = request.headers.get("If-Unmodified-Since-Version")
        if expected is not None and int(expected) != entry["version"]:
            return httpx.Response(412, text=f"Object has been modified since specified version (expected {expected}, found {entry['version']})")
        version = self._bump()
        if request.method == "PATCH":
            entry["data"].update(json.loads(request.content))
            entry["version"] = entry["data"]["version"] = version
            return httpx.Response(204, headers={"Last-Modified-Version": str(version)})
        if request.method == "DELETE":
            del store[key]
            return httpx.Response(204, headers={"Last-Modified-Version": str(version)})
        return httpx.Response(405, text="Method not allowed")

    def _delete_items(self, request: httpx.Request, keys: list[str]) -> httpx.Response:
        expected = request.headers.get("If-Unmodified-Since-Version")
        if expected is not None and int(expected) != self.library_version:
            return httpx.Response(412, text="Library has been modified since specified version")
        for key in keys:
            self.items.pop(key, None)
        version = self._bump()
        return httpx.Response(204, headers={"Last-Modified-Version": str(version)})


@pytest.fixture
def fake() -> FakeZotero:
    return FakeZotero()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def config() -> ZoteroConfig:
    return ZoteroConfig(api_key="testkey", user_id="1", base_url=BASE_URL)


@pytest.fixture
def make_client(config: ZoteroConfig, fake: FakeZotero, clock: FakeClock):
    def factory(**overrides: Any) -> ZoteroClient:
        cfg = dataclasses.replace(config, **overrides)
        retry = RetryController(cfg.max_retries, cfg.timeout, sleep=clock.sleep, clock=clock)
        cache = CacheManager(clock=clock, max_entries=cfg.cache_max_entries)
        return ZoteroClient(cfg, cache, retry=retry, transport=httpx.MockTransport(fake.handler))

    return factory


@pytest.fixture
def client(make_client) -> ZoteroClient:
    return make_client()
