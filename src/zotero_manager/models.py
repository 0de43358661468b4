"""Typed views over Zotero API payloads."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any, Iterable, Literal, Mapping

_ENTITY_FIELDS = frozenset({"key", "version", "data", "meta", "library", "links"})


@dataclass(frozen=True)
class LibraryRef:
    kind: Literal["user", "group"]
    id: str

    @property
    def prefix(self) -> str:
        return f"/{self.kind}s/{self.id}"


class TagKind(IntEnum):
    # Zotero API "type" values
    MANUAL = 0
    AUTOMATIC = 1


@dataclass(frozen=True)
class Tag:
    name: str
    kind: TagKind = TagKind.MANUAL

    @classmethod
    def from_api(cls, raw: Mapping[str, Any] | str) -> "Tag":
        if isinstance(raw, str):
            return cls(raw)
        kind = raw.get("type")
        if kind is None:
            kind = (raw.get("meta") or {}).get("type", 0)
        try:
            tag_kind = TagKind(int(kind))
        except (TypeError, ValueError):
            tag_kind = TagKind.MANUAL
        return cls(str(raw.get("tag", "")), tag_kind)

    def to_api(self) -> dict[str, Any]:
        if self.kind is TagKind.MANUAL:
            return {"tag": self.name}
        return {"tag": self.name, "type": int(self.kind)}


@dataclass
class RemoteEntity:
    """A server-owned object identified by ``key`` and versioned by ``version``."""

    key: str
    version: int
    data: dict[str, Any] = field(default_factory=dict)
    meta: dict[str, Any] = field(default_factory=dict)
    library: dict[str, Any] = field(default_factory=dict)
    links: dict[str, Any] = field(default_factory=dict)
    # top-level extras requested through "include" (bib, citation, ...)
    extra: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_api(cls, raw: Mapping[str, Any]):
        data = dict(raw.get("data") or {})
        key = raw.get("key") or data.get("key") or ""
        version = raw.get("version", data.get("version", 0))
        return cls(
            key=str(key),
            version=int(version or 0),
            data=data,
            meta=dict(raw.get("meta") or {}),
            library=dict(raw.get("library") or {}),
            links=dict(raw.get("links") or {}),
            extra={k: v for k, v in raw.items() if k not in _ENTITY_FIELDS},
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"key": self.key, "version": self.version, "data": self.data}
        if self.meta:
            out["meta"] = self.meta
        if self.library:
            out["library"] = self.library
        out.update(self.extra)
        return out


@dataclass
class Item(RemoteEntity):
    @property
    def item_type(self) -> str:
        return str(self.data.get("itemType", "unknown"))

    @property
    def title(self) -> str:
        return str(self.data.get("title") or "")

    @property
    def doi(self) -> str | None:
        return self.data.get("DOI") or None

    @property
    def tags(self) -> list[Tag]:
        return [Tag.from_api(t) for t in self.data.get("tags") or []]

    def summary(self) -> dict[str, Any]:
        d = self.data
        return {
            "key": self.key,
            "version": self.version,
            "itemType": d.get("itemType"),
            "title": d.get("title"),
            "creators": d.get("creators"),
            "date": d.get("date"),
            "DOI": d.get("DOI"),
            "url": d.get("url"),
            "tags": d.get("tags"),
            "collections": d.get("collections"),
            "abstractNote": d.get("abstractNote"),
        }


@dataclass
class Collection(RemoteEntity):
    @property
    def name(self) -> str:
        return str(self.data.get("name") or "(unnamed)")

    @property
    def parent_collection(self) -> str | None:
        return self.data.get("parentCollection") or None

    def summary(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "name": self.name,
            "parentCollection": self.parent_collection or False,
            "numItems": self.meta.get("numItems", 0),
            "numCollections": self.meta.get("numCollections", 0),
        }


@dataclass
class TagRemovalReport:
    tag: str
    updated_items: int = 0
    removed_tags: int = 0
    pages: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "tag": self.tag,
            "updatedItems": self.updated_items,
            "removedTags": self.removed_tags,
            "pages": self.pages,
        }


def merge_template(template: Mapping[str, Any], fields: Mapping[str, Any]) -> dict[str, Any]:
    """Overlay ``fields`` on an item ``template``.

    Template keys keep their order, user values win over template defaults,
    and keys the template lacks are appended in the caller's order. Neither
    input is modified.
    """
    merged = dict(template)
    merged.update(fields)
    return merged


def normalize_tags(tags: Iterable[Any] | None, kind: TagKind = TagKind.MANUAL) -> list[dict[str, Any]] | None:
    """Accept ``"name"``, ``{"tag": ...}`` or :class:`Tag` entries; drop anything else."""
    if tags is None:
        return None
    norm: list[dict[str, Any]] = []
    for t in tags:
        if isinstance(t, Tag):
            norm.append(t.to_api())
        elif isinstance(t, str):
            if t.strip():
                norm.append(Tag(t.strip(), kind).to_api())
        elif isinstance(t, Mapping) and t.get("tag"):
            norm.append(dict(t))
    return norm
