import asyncio
import json
import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Any, Literal
from urllib.parse import unquote

from mcp.server.fastmcp import FastMCP

from zotero_manager.client import close_zotero_client, get_zotero_client
from zotero_manager.errors import NotFoundError, ValidationError, ZoteroError, classify
from zotero_manager.models import Item, TagKind, merge_template, normalize_tags

__version__ = "0.1.0"

# Structured logger
logger = logging.getLogger("zotero_manager")
if not logger.handlers:
    # stderr only: stdout carries the stdio transport
    h = logging.StreamHandler()
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s", "%Y-%m-%dT%H:%M:%SZ")
    formatter.converter = time.gmtime
    h.setFormatter(formatter)
    logger.addHandler(h)
    _lvl = os.getenv("LOG_LEVEL", "INFO").upper()
    if _lvl == "WARN":
        _lvl = "WARNING"
    logger.setLevel(getattr(logging, _lvl, logging.INFO))

CACHE_SWEEP_INTERVAL = 300.0

CITATION_STYLES = [
    {"id": "apa", "name": "American Psychological Association 7th edition"},
    {"id": "chicago-note-bibliography", "name": "Chicago Manual of Style (notes and bibliography)"},
    {"id": "chicago-author-date", "name": "Chicago Manual of Style (author-date)"},
    {"id": "mla", "name": "Modern Language Association 9th edition"},
    {"id": "ieee", "name": "IEEE"},
    {"id": "nature", "name": "Nature"},
    {"id": "science", "name": "Science"},
    {"id": "cell", "name": "Cell"},
    {"id": "ama", "name": "American Medical Association 11th edition"},
    {"id": "asa", "name": "American Sociological Association 6th edition"},
    {"id": "harvard-cite-them-right", "name": "Cite Them Right - Harvard"},
    {"id": "vancouver", "name": "Vancouver"},
    {"id": "turabian-fullnote-bibliography", "name": "Turabian (full note)"},
    {"id": "american-chemical-society", "name": "American Chemical Society"},
    {"id": "bibtex", "name": "BibTeX generic citation style"},
]


async def periodic_cache_cleanup(interval: float = CACHE_SWEEP_INTERVAL) -> None:
    """Evict expired cache entries every ``interval`` seconds."""
    while True:
        try:
            await asyncio.sleep(interval)
            removed = get_zotero_client().cache.cleanup()
            if removed:
                logger.info(f"Cache sweep evicted {removed} expired entr{'y' if removed == 1 else 'ies'}")
        except asyncio.CancelledError:
            logger.info("Cache sweep task cancelled")
            break
        except Exception as e:  # noqa: BLE001
            logger.error(f"Cache sweep error: {e}")


@asynccontextmanager
async def server_lifespan():
    """Process lifetime: run the cache sweeper, close the shared HTTP client at shutdown."""
    sweeper = asyncio.create_task(periodic_cache_cleanup())
    logger.info("Started cache cleanup background task")
    try:
        yield {}
    finally:
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        await close_zotero_client()
        logger.info("Zotero Manager server stopped")


@asynccontextmanager
async def session_lifespan(server: FastMCP):
    """One MCP session; SSE opens one per connection. The shared client outlives it."""
    logger.debug("MCP session opened")
    try:
        yield {}
    finally:
        logger.debug("MCP session closed")


# Create an MCP server
mcp = FastMCP("Zotero Manager", lifespan=session_lifespan)


# ------------------------
# Rendering helpers
# ------------------------

_STATUS_HINTS = {
    400: "Invalid type/field or unparseable JSON. Check field names for the item type.",
    403: "Insufficient permissions for this library or action. Check API key scopes.",
    409: "Library is locked. Retry after a short delay.",
    412: "Version mismatch: fetch the latest item and retry with its current version.",
    413: "Request too large or storage quota exceeded (attachments).",
    428: "The write needs a version. Pass the version last read from the object.",
}


def _format_error(prefix: str, e: Exception) -> str:
    """Render any failure as a user-facing message with an optional hint."""
    error = classify(e)
    text = f"{prefix}: {error.user_message()}"
    helper = _STATUS_HINTS.get(error.status_code or 0)
    if helper:
        text += f"\nHint: {helper}"
    if error.body and error.status_code and error.status_code < 500:
        text += "\nServer: " + str(error.body)[:800]
    logger.debug(f"{prefix}: {error!r}")
    return text


def _compact_json_block(label: str, obj: Any) -> str:
    return f"\n\n### {label}\n```json\n{json.dumps(obj, ensure_ascii=False, separators=(',', ':'), default=str)}\n```"


def _require(condition: Any, message: str) -> None:
    if not condition:
        raise ValidationError(message)


def _format_item_line(i: int, item: Item) -> str:
    d = item.data
    creators = d.get("creators") or []
    names = []
    for c in creators[:3]:
        name = c.get("name") or " ".join(p for p in (c.get("firstName"), c.get("lastName")) if p)
        if name:
            names.append(name)
    if len(creators) > 3:
        names.append("et al.")
    line = f"{i}. **{item.title or '(untitled)'}** `{item.key}` ({item.item_type})"
    extras = [", ".join(names), d.get("date") or ""]
    extras = [x for x in extras if x]
    if extras:
        line += " - " + "; ".join(extras)
    return line


# ------------------------
# Tools
# ------------------------

@mcp.tool(
    name="zotero_health",
    description="Report server health: configuration summary, cache size, and rate-limit pause state.",
)
def zotero_health() -> str:
    """Return a compact health summary for quick diagnostics."""
    _t0 = time.perf_counter()
    info: dict[str, Any] = {"version": __version__}
    try:
        client = get_zotero_client()
        info["zoteroClient"] = "ok"
        info["config"] = client.config.summary()
        info["cache"] = {"size": len(client.cache), "max": client.cache.max_entries}
        info["rateLimit"] = {
            "paused": client.retry.paused_until() is not None,
            "pauseRemainingSeconds": round(client.retry.pause_remaining(), 1),
            "requestsInWindow": client.retry.state.request_count,
        }
    except Exception as e:  # noqa: BLE001
        err = classify(e)
        info["zoteroClient"] = f"error: {err.user_message()}"
    info["logLevel"] = logging.getLevelName(logger.level)
    info["now"] = time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())
    info["latencyMs"] = round((time.perf_counter() - _t0) * 1000, 1)
    logger.debug(f"health: {info}")
    return "# Health\n" + _compact_json_block("result", info)


@mcp.tool(
    name="zotero_search_items",
    # https://www.zotero.org/support/dev/web_api/v3/basics#searching
    description=(
        "Search items in the Zotero library. Filters: query (q), qmode (titleCreatorYear or everything), "
        "itemType, tag (a list means AND), collection key. format=json returns summaries; bibtex or csljson "
        "returns the raw export text."
    ),
)
async def search_items(
    query: str | None = None,
    qmode: Literal["titleCreatorYear", "everything"] | None = None,
    itemType: str | None = None,
    tag: str | list[str] | None = None,
    collection: str | None = None,
    limit: int | None = 25,
    start: int | None = None,
    sort: Literal["dateAdded", "dateModified", "title", "creator"] | None = None,
    direction: Literal["asc", "desc"] | None = "desc",
    format: Literal["json", "bibtex", "csljson"] | None = "json",
) -> str:
    """Search for items in your Zotero library"""
    try:
        _require(limit is None or 1 <= limit <= 100, "limit must be between 1 and 100")
        _require(start is None or start >= 0, "start must be >= 0")
        params = {
            "q": query,
            "qmode": qmode,
            "itemType": itemType,
            "tag": tag,
            "limit": limit,
            "start": start,
            "sort": sort,
            "direction": direction,
        }
        fmt = format or "json"
        client = get_zotero_client()
        if fmt != "json":
            if collection:
                return await client.search_items_in_collection_raw(collection, params, fmt)
            return await client.search_items_raw(params, fmt)

        if collection:
            items = await client.search_items_in_collection(collection, params)
        else:
            items = await client.search_items(params)
        if not items:
            return "No items found matching your query."

        header = [
            f"# Search Results for: '{query or ''}'",
            f"Found {len(items)} items." + (f" Using tag filter: {tag}" if tag else ""),
            "Use item keys with zotero_get_item for full metadata.\n",
        ]
        lines = [_format_item_line(i, item) for i, item in enumerate(items, start=1)]
        payload = {"count": len(items), "items": [item.summary() for item in items]}
        return "\n".join(header + lines) + _compact_json_block("result", payload)
    except Exception as e:  # noqa: BLE001
        return _format_error("Error searching items", e)


@mcp.tool(
    name="zotero_get_item",
    description=(
        "Get one item by itemKey or DOI. format=json returns the item record; bibtex, biblatex, csljson "
        "or ris return the raw export text. include adds extra fields (e.g. bib, citation)."
    ),
)
async def get_item(
    itemKey: str | None = None,
    doi: str | None = None,
    format: Literal["json", "bibtex", "biblatex", "csljson", "ris"] | None = "json",
    include: list[str] | None = None,
) -> str:
    try:
        _require(itemKey or doi, "Either itemKey or doi must be provided")
        fmt = format or "json"
        client = get_zotero_client()
        key = itemKey
        found: Item | None = None
        if not key:
            found = await client.find_item_by_doi(doi or "")
            key = found.key
        if fmt == "json" and found is not None and not include:
            item: Any = found
        else:
            item = await client.get_item_with_format(key, fmt, include)
        if isinstance(item, str):
            return item
        return f"# Item `{item.key}`\n{item.title}" + _compact_json_block("result", item.to_dict())
    except Exception as e:  # noqa: BLE001
        return _format_error("Error fetching item", e)


@mcp.tool(
    name="zotero_generate_citation",
    description=(
        "Format a bibliography for itemKeys in a CSL style (see zotero://citation-styles). "
        "format=text returns plain text, html returns the server's XHTML."
    ),
)
async def generate_citation(
    itemKeys: list[str],
    style: str = "apa",
    format: Literal["text", "html"] | None = "text",
    locale: str | None = "en-US",
) -> str:
    try:
        keys = [k.strip() for k in itemKeys or [] if k and k.strip()]
        _require(keys, "itemKeys must contain at least one key")
        _require(style and style.strip(), "style must not be empty")
        return await get_zotero_client().generate_citation(keys, style.strip(), format or "text", locale)
    except Exception as e:  # noqa: BLE001
        return _format_error("Error generating citation", e)


@mcp.tool(
    name="zotero_create_item",
    description=(
        "Create a new item. The item template for itemType is filled with title, fields "
        "(any valid field for the type), creators, tags and collections."
    ),
)
async def create_item(
    itemType: str,
    title: str,
    fields: dict[str, Any] | None = None,
    creators: list[dict[str, Any]] | None = None,
    tags: list[Any] | None = None,
    collections: list[str] | None = None,
) -> str:
    try:
        _require(itemType and itemType.strip(), "itemType must not be empty")
        _require(title and title.strip(), "title must not be empty")
        for c in creators or []:
            _require(isinstance(c, dict) and c.get("creatorType"), "each creator needs a creatorType")
        client = get_zotero_client()
        template = await client.get_item_template(itemType.strip())
        user_fields: dict[str, Any] = dict(fields or {})
        user_fields["title"] = title.strip()
        if creators is not None:
            user_fields["creators"] = list(creators)
        norm_tags = normalize_tags(tags)
        if norm_tags is not None:
            user_fields["tags"] = norm_tags
        if collections is not None:
            user_fields["collections"] = list(collections)
        created = await client.create_item(merge_template(template, user_fields))
        summary = (
            f"## ✅ Item created\nKey: `{created.key}`\nType: {itemType}\nVersion: {created.version}\n"
            "Use zotero_get_item to view details."
        )
        return summary + _compact_json_block(
            "result", {"key": created.key, "version": created.version, "type": itemType}
        )
    except Exception as e:  # noqa: BLE001
        return _format_error("Error creating item", e)


@mcp.tool(
    name="zotero_update_item",
    description=(
        "Patch fields of an existing item. Pass the version you last read; the write is rejected "
        "if the item changed since. Without a version the current one is fetched first."
    ),
)
async def update_item(
    itemKey: str,
    data: dict[str, Any],
    version: int | None = None,
) -> str:
    try:
        _require(itemKey and itemKey.strip(), "itemKey must not be empty")
        _require(isinstance(data, dict) and data, "data must be a non-empty object")
        _require(version is None or version >= 0, "version must be >= 0")
        client = get_zotero_client()
        if version is None:
            version = (await client.fetch_item(itemKey)).version
        updated = await client.update_item(itemKey, data, version)
        summary = (
            f"## ✅ Item updated\nKey: `{itemKey}`\nVersion: {updated.version}\n"
            "Fields changed: " + ", ".join(sorted(data.keys()))
        )
        return summary + _compact_json_block("result", {"key": itemKey, "version": updated.version})
    except Exception as e:  # noqa: BLE001
        return _format_error("Error updating item", e)


@mcp.tool(
    name="zotero_delete_items",
    description="Delete 1 to 50 items in one call. version is the library version last observed.",
)
async def delete_items(itemKeys: list[str], version: int | None = None) -> str:
    try:
        keys = [k.strip() for k in itemKeys or [] if k and k.strip()]
        _require(keys, "itemKeys must contain at least one key")
        _require(len(keys) <= 50, f"at most 50 items can be deleted at once (got {len(keys)})")
        client = get_zotero_client()
        if version is None:
            version = await client.library_version()
        await client.delete_items(keys, version)
        return f"## ✅ Deleted {len(keys)} item(s)" + _compact_json_block(
            "result", {"success": True, "deleted": len(keys), "keys": keys}
        )
    except Exception as e:  # noqa: BLE001
        return _format_error("Error deleting items", e)


@mcp.tool(
    name="zotero_manage_collections",
    description=(
        "Manage collections. action=list|get|create|update|delete. get/update/delete need collectionKey; "
        "create/update need name; parentCollection nests a collection."
    ),
)
async def manage_collections(
    action: Literal["list", "get", "create", "update", "delete"],
    collectionKey: str | None = None,
    name: str | None = None,
    parentCollection: str | None = None,
    version: int | None = None,
) -> str:
    try:
        client = get_zotero_client()
        if action == "list":
            collections = await client.get_collections()
            lines = [f"- **{c.name}** `{c.key}`" for c in collections]
            payload = {"count": len(collections), "collections": [c.summary() for c in collections]}
            return "# Collections\n" + "\n".join(lines) + _compact_json_block("result", payload)

        if action == "create":
            _require(name and name.strip(), "name is required to create a collection")
            created = await client.create_collection(name.strip(), parentCollection)
            return f"## ✅ Collection created\nKey: `{created.key}`" + _compact_json_block(
                "result", created.to_dict()
            )

        _require(collectionKey, f"collectionKey is required for action '{action}'")
        if action == "get":
            collection = await client.get_collection(collectionKey)
            return f"# Collection {collection.name}" + _compact_json_block("result", collection.to_dict())
        if action == "update":
            _require(name and name.strip(), "name is required to update a collection")
            patch: dict[str, Any] = {"name": name.strip()}
            if parentCollection is not None:
                patch["parentCollection"] = parentCollection or False
            if version is None:
                version = (await client.fetch_collection(collectionKey)).version
            updated = await client.update_collection(collectionKey, patch, version)
            return f"## ✅ Collection updated\nKey: `{collectionKey}`" + _compact_json_block(
                "result", {"key": collectionKey, "version": updated.version}
            )
        if action == "delete":
            if version is None:
                version = (await client.fetch_collection(collectionKey)).version
            await client.delete_collection(collectionKey, version)
            return f"## ✅ Collection deleted\nKey: `{collectionKey}`" + _compact_json_block(
                "result", {"success": True, "deleted": collectionKey}
            )
        raise ValidationError(f"Unknown action: {action}")
    except Exception as e:  # noqa: BLE001
        return _format_error(f"Error managing collections ({action})", e)


@mcp.tool(
    name="zotero_manage_tags",
    description=(
        "Manage tags. action=list lists library tags; add_to_item/remove_from_item need itemKey and tag or tags; "
        "delete removes tag from every item in the library. type 0 = manual, 1 = automatic."
    ),
)
async def manage_tags(
    action: Literal["list", "add_to_item", "remove_from_item", "delete"],
    itemKey: str | None = None,
    tag: str | None = None,
    tags: list[str] | None = None,
    type: Literal[0, 1] | None = None,
) -> str:
    try:
        client = get_zotero_client()
        if action == "list":
            all_tags = await client.get_tags()
            payload = {"count": len(all_tags), "tags": [{"tag": t.name, "type": int(t.kind)} for t in all_tags]}
            return f"# Tags\nFound {len(all_tags)} tags." + _compact_json_block("result", payload)

        names = [t.strip() for t in (tags or ([tag] if tag else [])) if t and t.strip()]
        if action in ("add_to_item", "remove_from_item"):
            _require(itemKey, f"itemKey is required for action '{action}'")
            _require(names, "tag or tags must be provided")
            if action == "add_to_item":
                kind = TagKind(type) if type is not None else TagKind.MANUAL
                updated = await client.add_tags_to_item(itemKey, names, kind)
                title = "Tags added"
            else:
                updated = await client.remove_tags_from_item(itemKey, names)
                title = "Tags removed"
            return f"## ✅ {title}\nItem: `{itemKey}`\nTags: {', '.join(names)}" + _compact_json_block(
                "result", {"key": itemKey, "version": updated.version, "tags": names}
            )
        if action == "delete":
            _require(tag and tag.strip(), "tag is required for action 'delete'")
            report = await client.remove_tag_from_library(tag)
            return (
                f"## ✅ Tag removed from library\nTag: {report.tag}\n"
                f"Items updated: {report.updated_items}"
            ) + _compact_json_block("result", report.to_dict())
        raise ValidationError(f"Unknown action: {action}")
    except Exception as e:  # noqa: BLE001
        return _format_error(f"Error managing tags ({action})", e)


@mcp.tool(
    name="zotero_extract_fulltext",
    description=(
        "Return the text Zotero has indexed for an attachment (or the first attachment of a parent item); "
        "an unindexed PDF linked by absolute path is read from disk. "
        "startPage/endPage select a page window, approximate for indexed text."
    ),
)
async def extract_fulltext(
    itemKey: str,
    startPage: int | None = None,
    endPage: int | None = None,
) -> str:
    try:
        _require(itemKey and itemKey.strip(), "itemKey must not be empty")
        _require(startPage is None or startPage >= 1, "startPage must be >= 1")
        _require(
            endPage is None or endPage >= (startPage or 1), "endPage must be >= startPage"
        )
        result = await get_zotero_client().extract_fulltext(itemKey.strip(), startPage, endPage)
        return json.dumps(result, ensure_ascii=False, indent=2)
    except Exception as e:  # noqa: BLE001
        return _format_error("Error extracting full text", e)


# ------------------------
# Resources
# ------------------------

def _json_text(obj: Any) -> str:
    return json.dumps(obj, ensure_ascii=False, indent=2, default=str)


@mcp.resource("zotero://collections", name="collections", mime_type="application/json")
async def collections_resource() -> str:
    """All collections in the library."""
    try:
        collections = await get_zotero_client().get_collections()
    except ZoteroError as e:
        raise RuntimeError(f"Failed to fetch collections: {e.user_message()}") from e
    return _json_text({"count": len(collections), "collections": [c.summary() for c in collections]})


@mcp.resource("zotero://collections/{collection_key}", name="collection", mime_type="application/json")
async def collection_resource(collection_key: str) -> str:
    """One collection by key."""
    try:
        collection = await get_zotero_client().get_collection(collection_key)
    except ZoteroError as e:
        raise RuntimeError(f"Failed to fetch collections: {e.user_message()}") from e
    return _json_text(collection.to_dict())


@mcp.resource("zotero://tags", name="tags", mime_type="application/json")
async def tags_resource() -> str:
    """All tags in the library."""
    try:
        all_tags = await get_zotero_client().get_tags()
    except ZoteroError as e:
        raise RuntimeError(f"Failed to fetch tags: {e.user_message()}") from e
    return _json_text(
        {"count": len(all_tags), "tags": [{"tag": t.name, "type": int(t.kind)} for t in all_tags]}
    )


@mcp.resource("zotero://tags/{tag}", name="tag", mime_type="application/json")
async def tag_resource(tag: str) -> str:
    """One tag by (URL-encoded) name."""
    name = unquote(tag)
    try:
        all_tags = await get_zotero_client().get_tags()
        match = next((t for t in all_tags if t.name == name), None)
        if match is None:
            raise NotFoundError(f"Tag not found: {name}")
    except ZoteroError as e:
        raise RuntimeError(f"Failed to fetch tags: {e.user_message()}") from e
    return _json_text({"tag": match.name, "type": int(match.kind)})


@mcp.resource("zotero://citation-styles", name="citation-styles", mime_type="application/json")
def citation_styles_resource() -> str:
    """Common CSL styles; the server accepts any style id from the Zotero style repository."""
    return _json_text(
        {
            "count": len(CITATION_STYLES),
            "styles": CITATION_STYLES,
            "note": "Zotero supports 10,000+ citation styles. These are the most commonly used ones.",
        }
    )
