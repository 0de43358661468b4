from __future__ import annotations

from zotero_manager.models import Collection, Item, Tag, TagKind, merge_template, normalize_tags


def test_merge_template_user_fields_win_and_order_is_kept() -> None:
    template = {"itemType": "book", "title": "", "creators": [], "date": ""}
    fields = {"date": "2024", "title": "T", "extra": "x"}
    merged = merge_template(template, fields)
    assert list(merged) == ["itemType", "title", "creators", "date", "extra"]
    assert merged["title"] == "T" and merged["date"] == "2024"
    assert template["title"] == ""


def test_normalize_tags_accepts_strings_mappings_and_tags() -> None:
    tags = normalize_tags(["a", " ", {"tag": "b", "type": 1}, Tag("c", TagKind.AUTOMATIC), 3])
    assert tags == [{"tag": "a"}, {"tag": "b", "type": 1}, {"tag": "c", "type": 1}]
    assert normalize_tags(None) is None


def test_item_from_api_keeps_included_extras() -> None:
    raw = {
        "key": "ABCD2345",
        "version": 12,
        "data": {"itemType": "journalArticle", "title": "X", "DOI": "10.1/x", "tags": [{"tag": "t", "type": 1}]},
        "meta": {"numChildren": 1},
        "bib": "<div>X</div>",
    }
    item = Item.from_api(raw)
    assert item.version == 12 and item.doi == "10.1/x"
    assert item.tags == [Tag("t", TagKind.AUTOMATIC)]
    assert item.to_dict()["bib"] == "<div>X</div>"


def test_collection_summary_defaults() -> None:
    coll = Collection.from_api({"key": "C1", "version": 1, "data": {"name": "N"}})
    assert coll.summary() == {"key": "C1", "name": "N", "parentCollection": False, "numItems": 0, "numCollections": 0}
