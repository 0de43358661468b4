"""Async Zotero Web API client with caching, backoff and retries.

Reads go through the cache first and only hit the network on a miss; writes
invalidate every cache category they could have made stale. All network
traffic runs through the client's :class:`RetryController`.
"""

from __future__ import annotations

import asyncio
import html
import json
import logging
import re as _re
from typing import Any, Awaitable, Callable, Iterable, Mapping, Sequence, TypeVar

import httpx

from zotero_manager.cache import CacheManager
from zotero_manager.config import ZoteroConfig, load_config
from zotero_manager.errors import (
    ConfigurationError,
    NotFoundError,
    UnexpectedResponseError,
    ValidationError,
    error_from_response,
    error_from_write_failure,
)
from zotero_manager.models import (
    Collection,
    Item,
    LibraryRef,
    Tag,
    TagKind,
    TagRemovalReport,
)
from zotero_manager.pdf import local_pdf_path, read_pdf_pages, select_pages
from zotero_manager.responses import extract_data, extract_text, is_structured, normalize_response
from zotero_manager.retry import RetryController

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()

USER_AGENT = "zotero-manager-mcp"

COLLECTIONS_TTL = 900.0
TAGS_TTL = 900.0
TEMPLATE_TTL = 3600.0
CITATION_TTL = 3600.0
FULLTEXT_TTL = 30 * 24 * 3600.0

MAX_BATCH_DELETE = 50
MAX_PAGE_SIZE = 100
DOI_LOOKUP_LIMIT = 10
TAG_SWEEP_PAGE_SIZE = 100


def _serialize(params: Mapping[str, Any]) -> str:
    return json.dumps(params, sort_keys=True, default=str, separators=(",", ":"))


def _clean(params: Mapping[str, Any] | None) -> dict[str, Any]:
    return {k: v for k, v in (params or {}).items() if v is not None and v != [] and v != ""}


def _header_version(response: httpx.Response) -> int | None:
    raw = response.headers.get("Last-Modified-Version")
    try:
        return int(raw) if raw is not None else None
    except ValueError:
        return None


def _html_to_text(markup: str) -> str:
    """Flatten a formatted bibliography (XHTML) to plain text."""
    text = _re.sub(r"(?i)<br\s*/?>|</div>|</p>", "\n", markup)
    text = _re.sub(r"<[^>]+>", "", text)
    text = html.unescape(text)
    lines = [ln.strip() for ln in text.splitlines()]
    return "\n".join(ln for ln in lines if ln)


class ZoteroClient:
    """Library-scoped accessors for items, collections, tags, templates and citations."""

    def __init__(
        self,
        config: ZoteroConfig,
        cache: CacheManager | None = None,
        *,
        retry: RetryController | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config
        self.cache = cache if cache is not None else CacheManager(max_entries=config.cache_max_entries)
        self.retry = retry if retry is not None else RetryController(config.max_retries, config.timeout)
        self._http = httpx.AsyncClient(
            base_url=config.base_url,
            headers={
                "Zotero-API-Key": config.api_key,
                "Zotero-API-Version": "3",
                "User-Agent": USER_AGENT,
            },
            timeout=config.timeout,
            transport=transport,
        )

    async def __aenter__(self) -> "ZoteroClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    # ------------------------
    # Plumbing
    # ------------------------

    def library(self) -> LibraryRef:
        user_id, group_id = self.config.user_id, self.config.group_id
        if user_id and group_id:
            raise ConfigurationError("Both ZOTERO_USER_ID and ZOTERO_GROUP_ID are set; configure exactly one")
        if user_id:
            return LibraryRef("user", user_id)
        if group_id:
            return LibraryRef("group", group_id)
        raise ConfigurationError("No ZOTERO_USER_ID or ZOTERO_GROUP_ID configured")

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Mapping[str, Any] | None = None,
        json_body: Any = None,
        version: int | None = None,
    ) -> httpx.Response:
        headers: dict[str, str] = {}
        if version is not None:
            headers["If-Unmodified-Since-Version"] = str(version)
        query = _clean(params)

        async def send() -> httpx.Response:
            response = await self._http.request(
                method,
                path,
                params=query or None,
                json=json_body,
                headers=headers or None,
            )
            if response.status_code >= 400:
                raise error_from_response(response)
            return response

        logger.debug(f"{method} {path} {query or ''}")
        response = await self.retry.run(send)
        self.retry.note_backoff(response.headers)
        return response

    async def _read_through(self, key: str, ttl: float, fetch: Callable[[], Awaitable[T]]) -> T:
        if self.config.cache_enabled:
            hit = self.cache.get(key, _MISSING)
            if hit is not _MISSING:
                logger.debug(f"cache hit: {key}")
                return hit
        value = await fetch()
        if self.config.cache_enabled:
            self.cache.set(key, value, ttl)
        return value

    def _invalidate(self, *prefixes: str) -> None:
        if not self.config.cache_enabled:
            return
        for prefix in prefixes:
            n = self.cache.invalidate_by_prefix(prefix)
            if n:
                logger.debug(f"invalidated {n} cache entries under {prefix!r}")

    def _after_item_write(self, keys: Iterable[str], *, touches_tags: bool, deleted: bool = False) -> None:
        prefixes = [f"item:{k}:" for k in keys]
        prefixes += ["search:", "collections:", "citation:"]
        if touches_tags or deleted:
            prefixes.append("tags:")
        self._invalidate(*prefixes)

    def _after_collection_write(self) -> None:
        self._invalidate("collections:", "search:")

    async def _get_all_pages(self, path: str, params: Mapping[str, Any] | None = None) -> list[Any]:
        """Follow ``start``/``limit`` paging until a short page comes back."""
        out: list[Any] = []
        start = 0
        while True:
            query = dict(params or {}, limit=MAX_PAGE_SIZE, start=start)
            page = extract_data(await self._request("GET", path, params=query))
            out.extend(page)
            if len(page) < MAX_PAGE_SIZE:
                return out
            start += len(page)

    @staticmethod
    def _write_result(response: httpx.Response) -> dict[str, Any]:
        """Return the single object of a multi-object write response, or raise its failure."""
        body = extract_data(response)
        if isinstance(body, list):
            if not body:
                raise UnexpectedResponseError("Empty write response")
            return body[0]
        failed = body.get("failed") or {}
        if failed:
            raise error_from_write_failure(next(iter(failed.values())))
        successful = body.get("successful") or {}
        if successful:
            return next(iter(successful.values()))
        keys = body.get("success") or body.get("unchanged") or {}
        if keys:
            return {"key": next(iter(keys.values())), "version": _header_version(response) or 0}
        raise UnexpectedResponseError("Write response contained no result")

    # ------------------------
    # Items: reads
    # ------------------------

    async def _search(
        self, path_suffix: str, key_prefix: str, params: Mapping[str, Any], fmt: str
    ) -> list[Item] | str:
        query = _clean(params)
        query["format"] = fmt
        cache_key = key_prefix + _serialize(query)

        async def fetch() -> list[Item] | str:
            lib = self.library()
            response = await self._request("GET", lib.prefix + path_suffix, params=query)
            body = normalize_response(response, fmt)
            if is_structured(fmt):
                return [Item.from_api(raw) for raw in body]
            return body

        return await self._read_through(cache_key, self.config.cache_ttl, fetch)

    async def search_items(self, params: Mapping[str, Any]) -> list[Item]:
        return await self._search("/items", "search:", params, "json")  # type: ignore[return-value]

    async def search_items_raw(self, params: Mapping[str, Any], fmt: str) -> str:
        return await self._search("/items", "search:", params, fmt)  # type: ignore[return-value]

    async def search_items_in_collection(self, collection_key: str, params: Mapping[str, Any]) -> list[Item]:
        return await self._search(  # type: ignore[return-value]
            f"/collections/{collection_key}/items", f"search:collection:{collection_key}:", params, "json"
        )

    async def search_items_in_collection_raw(
        self, collection_key: str, params: Mapping[str, Any], fmt: str
    ) -> str:
        return await self._search(  # type: ignore[return-value]
            f"/collections/{collection_key}/items", f"search:collection:{collection_key}:", params, fmt
        )

    async def get_item_with_format(
        self, item_key: str, fmt: str | None = "json", include: Sequence[str] | None = None
    ) -> Item | str:
        """Fetch one item as a typed :class:`Item` (``json``) or as the raw text body."""
        fmt = fmt or "json"
        include_key = ",".join(include) if include else ""
        cache_key = f"item:{item_key}:{fmt}:{include_key}"

        async def fetch() -> Item | str:
            lib = self.library()
            response = await self._request(
                "GET",
                f"{lib.prefix}/items/{item_key}",
                params={"format": fmt, "include": include_key or None},
            )
            body = normalize_response(response, fmt)
            return Item.from_api(body) if is_structured(fmt) else body

        return await self._read_through(cache_key, self.config.cache_ttl, fetch)

    async def get_item(self, item_key: str) -> Item:
        return await self.get_item_with_format(item_key, "json")  # type: ignore[return-value]

    async def fetch_item(self, item_key: str) -> Item:
        """Uncached read, used where the current version matters."""
        lib = self.library()
        response = await self._request("GET", f"{lib.prefix}/items/{item_key}", params={"format": "json"})
        return Item.from_api(extract_data(response))

    async def library_version(self) -> int:
        """Current library version, for conditional multi-object writes."""
        lib = self.library()
        response = await self._request("GET", f"{lib.prefix}/items", params={"limit": 1, "format": "versions"})
        version = _header_version(response)
        if version is None:
            raise UnexpectedResponseError("Response carried no Last-Modified-Version header")
        return version

    async def find_item_by_doi(self, doi: str) -> Item:
        """Best-effort lookup: scans one search page of at most 10 results."""
        wanted = doi.strip().lower()
        if not wanted:
            raise ValidationError("DOI must not be empty")
        items = await self.search_items({"q": doi.strip(), "qmode": "everything", "limit": DOI_LOOKUP_LIMIT})
        for item in items:
            if (item.doi or "").strip().lower() == wanted:
                return item
        raise NotFoundError(f"No item found with DOI: {doi}")

    async def get_item_template(self, item_type: str) -> dict[str, Any]:
        async def fetch() -> dict[str, Any]:
            response = await self._request("GET", "/items/new", params={"itemType": item_type})
            return dict(extract_data(response))

        template = await self._read_through(f"template:{item_type}", TEMPLATE_TTL, fetch)
        return dict(template)

    # ------------------------
    # Items: writes
    # ------------------------

    async def create_item(self, item_data: Mapping[str, Any]) -> Item:
        lib = self.library()
        response = await self._request("POST", f"{lib.prefix}/items", json_body=[dict(item_data)])
        created = Item.from_api(self._write_result(response))
        self._after_item_write([created.key], touches_tags="tags" in item_data)
        logger.info(f"created item {created.key} (version {created.version})")
        return created

    async def update_item(self, item_key: str, item_data: Mapping[str, Any], version: int | None = None) -> Item:
        """PATCH ``item_data`` onto an item.

        With ``version`` the write is conditional: the server rejects it with
        412 when the item changed since that version. The returned item
        carries the new version and the fields that were sent.
        """
        lib = self.library()
        payload = dict(item_data)
        response = await self._request("PATCH", f"{lib.prefix}/items/{item_key}", json_body=payload, version=version)
        self._after_item_write([item_key], touches_tags="tags" in payload)
        new_version = _header_version(response)
        if new_version is None:
            # Best-effort: fetch the latest version
            latest = await self.fetch_item(item_key)
            return latest
        return Item(key=item_key, version=new_version, data=payload)

    async def delete_items(self, item_keys: Sequence[str], version: int | None = None) -> None:
        keys = [k for k in item_keys if k]
        if not keys:
            raise ValidationError("At least one item key is required")
        if len(keys) > MAX_BATCH_DELETE:
            raise ValidationError(f"Cannot delete more than {MAX_BATCH_DELETE} items at once (got {len(keys)})")
        lib = self.library()
        await self._request("DELETE", f"{lib.prefix}/items", params={"itemKey": ",".join(keys)}, version=version)
        self._after_item_write(keys, touches_tags=True, deleted=True)
        logger.info(f"deleted {len(keys)} item(s)")

    # ------------------------
    # Collections
    # ------------------------

    async def get_collections(self) -> list[Collection]:
        async def fetch() -> list[Collection]:
            lib = self.library()
            raw = await self._get_all_pages(f"{lib.prefix}/collections")
            return [Collection.from_api(c) for c in raw]

        return await self._read_through("collections:all", COLLECTIONS_TTL, fetch)

    async def get_collection(self, collection_key: str) -> Collection:
        async def fetch() -> Collection:
            lib = self.library()
            response = await self._request("GET", f"{lib.prefix}/collections/{collection_key}")
            return Collection.from_api(extract_data(response))

        return await self._read_through(f"collections:{collection_key}", COLLECTIONS_TTL, fetch)

    async def fetch_collection(self, collection_key: str) -> Collection:
        lib = self.library()
        response = await self._request("GET", f"{lib.prefix}/collections/{collection_key}")
        return Collection.from_api(extract_data(response))

    async def create_collection(self, name: str, parent_collection: str | None = None) -> Collection:
        lib = self.library()
        payload: dict[str, Any] = {"name": name}
        if parent_collection:
            payload["parentCollection"] = parent_collection
        response = await self._request("POST", f"{lib.prefix}/collections", json_body=[payload])
        created = Collection.from_api(self._write_result(response))
        self._after_collection_write()
        return created

    async def update_collection(
        self, collection_key: str, collection_data: Mapping[str, Any], version: int | None = None
    ) -> Collection:
        lib = self.library()
        payload = dict(collection_data)
        response = await self._request(
            "PATCH", f"{lib.prefix}/collections/{collection_key}", json_body=payload, version=version
        )
        self._after_collection_write()
        return Collection(key=collection_key, version=_header_version(response) or (version or 0), data=payload)

    async def delete_collection(self, collection_key: str, version: int | None = None) -> None:
        lib = self.library()
        await self._request("DELETE", f"{lib.prefix}/collections/{collection_key}", version=version)
        self._after_collection_write()

    # ------------------------
    # Tags
    # ------------------------

    async def get_tags(self) -> list[Tag]:
        async def fetch() -> list[Tag]:
            lib = self.library()
            raw = await self._get_all_pages(f"{lib.prefix}/tags")
            return [Tag.from_api(t) for t in raw]

        return await self._read_through("tags:all", TAGS_TTL, fetch)

    async def add_tags_to_item(self, item_key: str, tags: Iterable[str], kind: TagKind = TagKind.MANUAL) -> Item:
        item = await self.fetch_item(item_key)
        current = list(item.data.get("tags") or [])
        present = {str(t.get("tag")) for t in current if isinstance(t, Mapping)}
        for name in tags:
            name = name.strip()
            if name and name not in present:
                current.append(Tag(name, kind).to_api())
                present.add(name)
        return await self.update_item(item_key, {"tags": current}, version=item.version)

    async def remove_tags_from_item(self, item_key: str, tags: Iterable[str]) -> Item:
        item = await self.fetch_item(item_key)
        doomed = {t.strip() for t in tags}
        remaining = [t for t in item.data.get("tags") or [] if t.get("tag") not in doomed]
        return await self.update_item(item_key, {"tags": remaining}, version=item.version)

    async def remove_tag_from_library(self, tag: str, page_size: int = TAG_SWEEP_PAGE_SIZE) -> TagRemovalReport:
        """Strip ``tag`` from every item in the library.

        Pages through ``tag``-filtered search results, updating each matching
        item once with its own version. Updated items drop out of the filter,
        so only skipped items advance the offset. Every page is applied before
        the next one is requested; an interruption leaves earlier pages done.

        A leading ``-`` is escaped so the filter is not read as a negation.
        ``||`` has no escape in the tag filter, so such names match the union
        of their parts and the sweep skips over the unrelated items.
        """
        name = tag.strip()
        if not name:
            raise ValidationError("Tag name must not be empty")
        tag_filter = "\\" + name if name.startswith("-") else name
        if "||" in name:
            logger.warning(f"tag sweep '{name}': '||' is read as OR, unrelated items will be paged through")
        lib = self.library()
        report = TagRemovalReport(tag=name)
        start = 0
        while True:
            response = await self._request(
                "GET",
                f"{lib.prefix}/items",
                params={"tag": tag_filter, "limit": page_size, "start": start, "format": "json"},
            )
            page = [Item.from_api(raw) for raw in extract_data(response)]
            report.pages += 1
            skipped = 0
            for item in page:
                raw_tags = item.data.get("tags") or []
                kept = [t for t in raw_tags if t.get("tag") != name]
                removed = len(raw_tags) - len(kept)
                if not removed:
                    skipped += 1
                    continue
                await self.update_item(item.key, {"tags": kept}, version=item.version)
                report.updated_items += 1
                report.removed_tags += removed
            logger.info(
                f"tag sweep '{name}': page {report.pages}, {len(page) - skipped} updated, {skipped} skipped"
            )
            if len(page) < page_size:
                break
            start += skipped
        self._invalidate("tags:")
        return report

    # ------------------------
    # Citations and full text
    # ------------------------

    async def generate_citation(
        self,
        item_keys: Sequence[str],
        style: str = "apa",
        fmt: str = "text",
        locale: str | None = None,
    ) -> str:
        if not item_keys:
            raise ValidationError("At least one item key is required")
        cache_key = f"citation:{','.join(item_keys)}:{style}:{fmt}:{locale or 'default'}"

        async def fetch() -> str:
            lib = self.library()
            response = await self._request(
                "GET",
                f"{lib.prefix}/items",
                params={
                    "itemKey": ",".join(item_keys),
                    "format": "bib",
                    "style": style,
                    "linkwrap": 1 if fmt == "html" else 0,
                    "locale": locale,
                },
            )
            body = extract_text(response)
            return body if fmt == "html" else _html_to_text(body)

        return await self._read_through(cache_key, CITATION_TTL, fetch)

    async def _find_attachment(self, lib: LibraryRef, item_key: str) -> str | None:
        response = await self._request("GET", f"{lib.prefix}/items/{item_key}/children", params={"format": "json"})
        children = [Item.from_api(raw) for raw in extract_data(response)]
        attachments = [c for c in children if c.item_type == "attachment"]
        # Prefer PDFs, then anything indexable
        attachments.sort(key=lambda c: c.data.get("contentType") != "application/pdf")
        return attachments[0].key if attachments else None

    async def get_fulltext(self, item_key: str) -> dict[str, Any]:
        """Indexed full text of an attachment, or of the first attachment of a parent item."""

        async def fetch() -> dict[str, Any]:
            lib = self.library()
            try:
                response = await self._request("GET", f"{lib.prefix}/items/{item_key}/fulltext")
                return dict(extract_data(response), attachmentKey=item_key)
            except NotFoundError:
                attachment = await self._find_attachment(lib, item_key)
                if attachment is None:
                    raise NotFoundError(
                        f"No indexed full text for {item_key}: the item has no attachment that Zotero has indexed"
                    )
                response = await self._request("GET", f"{lib.prefix}/items/{attachment}/fulltext")
                return dict(extract_data(response), attachmentKey=attachment)

        return await self._read_through(f"fulltext:{item_key}", FULLTEXT_TTL, fetch)

    async def extract_fulltext(
        self, item_key: str, start_page: int | None = None, end_page: int | None = None
    ) -> dict[str, Any]:
        """Full text with an optional page window.

        Zotero's index does not keep page breaks, so the window is estimated
        by splitting lines evenly across ``totalPages``. Without indexed text,
        a PDF attachment linked by absolute path is parsed from disk and the
        window uses its real pages.
        """
        try:
            full = await self.get_fulltext(item_key)
        except NotFoundError as exc:
            return await self._extract_local_pdf(item_key, start_page, end_page, exc)
        content = str(full.get("content") or "")
        if not content:
            return await self._extract_local_pdf(
                item_key, start_page, end_page, NotFoundError(f"Indexed full text for {item_key} is empty")
            )
        total_pages = int(full.get("totalPages") or full.get("indexedPages") or 1)
        if start_page is not None or end_page is not None:
            lines = content.split("\n")
            per_page = max(1, -(-len(lines) // total_pages))
            first = (start_page - 1) * per_page if start_page else 0
            last = end_page * per_page if end_page else len(lines)
            content = "\n".join(lines[first:last])
        return {
            "content": content,
            "numPages": total_pages,
            "info": {
                "attachmentKey": full.get("attachmentKey"),
                "indexedChars": full.get("indexedChars"),
                "totalChars": full.get("totalChars"),
                "indexedPages": full.get("indexedPages"),
                "source": "zotero-indexed",
            },
        }

    async def _extract_local_pdf(
        self, item_key: str, start_page: int | None, end_page: int | None, cause: NotFoundError
    ) -> dict[str, Any]:
        item = await self.fetch_item(item_key)
        path = local_pdf_path(item.data)
        if path is None:
            raise cause
        try:
            pages = await asyncio.to_thread(read_pdf_pages, path)
        except Exception as exc:  # noqa: BLE001
            logger.warning(f"could not read local PDF {path}: {exc}")
            raise NotFoundError(
                f"PDF full text not available for {item_key}: not indexed by Zotero and {path} could not be read"
            ) from exc
        return {
            "content": select_pages(pages, start_page, end_page),
            "numPages": len(pages),
            "info": {"attachmentKey": item_key, "source": "local-file", "path": path},
        }


_CLIENT: ZoteroClient | None = None


def get_zotero_client() -> ZoteroClient:
    """Return the process-wide client, building it from the environment on first use."""
    global _CLIENT
    if _CLIENT is None:
        config = load_config()
        _CLIENT = ZoteroClient(config)
        logger.info(f"Zotero client ready for {config.summary()['library']}")
    return _CLIENT


async def close_zotero_client() -> None:
    global _CLIENT
    if _CLIENT is not None:
        await _CLIENT.aclose()
        _CLIENT = None
