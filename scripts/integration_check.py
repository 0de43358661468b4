#!/usr/bin/env python3
"""Live smoke run of zotero_manager.client against a real Zotero library.

Reads ZOTERO_API_KEY and ZOTERO_USER_ID / ZOTERO_GROUP_ID from the environment
(or .env). Read checks always run; --write also creates, updates, tags and
deletes a throwaway item.

Examples:
    python scripts/integration_check.py
    python scripts/integration_check.py --write
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from typing import List

from zotero_manager.client import ZoteroClient
from zotero_manager.config import load_config
from zotero_manager.errors import PreconditionError, ZoteroError
from zotero_manager.models import merge_template


class Report:
    def __init__(self) -> None:
        self.passed = 0
        self.failed = 0

    def log(self, name: str, ok: bool, message: str = "") -> None:
        if ok:
            self.passed += 1
            print(f"PASS {name}" + (f": {message}" if message else ""))
        else:
            self.failed += 1
            print(f"FAIL {name}" + (f": {message}" if message else ""))


async def run(write: bool) -> int:
    config = load_config()
    print("Configuration:")
    for k, v in config.summary().items():
        print(f"  {k}: {v}")
    print()

    report = Report()
    async with ZoteroClient(config) as client:
        item_key = None
        try:
            items = await client.search_items({"limit": 5})
            report.log("search items", True, f"found {len(items)} items")
            item_key = next((i.key for i in items if i.item_type != "attachment"), None)
        except ZoteroError as e:
            report.log("search items", False, e.user_message())

        try:
            collections = await client.get_collections()
            report.log("get collections", True, f"found {len(collections)} collections")
        except ZoteroError as e:
            report.log("get collections", False, e.user_message())

        try:
            tags = await client.get_tags()
            report.log("get tags", True, f"found {len(tags)} tags")
        except ZoteroError as e:
            report.log("get tags", False, e.user_message())

        if item_key:
            try:
                first = await client.get_item_with_format(item_key, "bibtex")
                second = await client.get_item_with_format(item_key, "bibtex")
                report.log("bibtex from cache", first == second, f"{len(first)} chars")
            except ZoteroError as e:
                report.log("bibtex from cache", False, e.user_message())
            try:
                citation = await client.generate_citation([item_key], "apa")
                report.log("generate citation", bool(citation), citation[:80])
            except ZoteroError as e:
                report.log("generate citation", False, e.user_message())

        if write:
            await _write_checks(client, report)

    print(f"\n{report.passed} passed, {report.failed} failed")
    return 1 if report.failed else 0


async def _write_checks(client: ZoteroClient, report: Report) -> None:
    try:
        template = await client.get_item_template("journalArticle")
        created = await client.create_item(
            merge_template(template, {"title": "zotero-manager integration check", "tags": [{"tag": "zm-check"}]})
        )
        report.log("create item", True, created.key)
    except ZoteroError as e:
        report.log("create item", False, e.user_message())
        return

    try:
        updated = await client.update_item(created.key, {"abstractNote": "updated"}, created.version)
        report.log("update with returned version", True, f"version {updated.version}")
        try:
            await client.update_item(created.key, {"abstractNote": "stale"}, created.version)
            report.log("stale version rejected", False, "stale update succeeded")
        except PreconditionError:
            report.log("stale version rejected", True)
        await client.add_tags_to_item(created.key, ["zm-check-extra"])
        report.log("add tag", True)
    except ZoteroError as e:
        report.log("update item", False, e.user_message())

    try:
        await client.delete_items([created.key], await client.library_version())
        report.log("delete item", True)
    except ZoteroError as e:
        report.log("delete item", False, e.user_message())


def main(argv: List[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Smoke-test zotero_manager against a live Zotero library")
    p.add_argument("--write", action="store_true", help="Also run create/update/delete checks")
    args = p.parse_args(argv)
    try:
        return asyncio.run(run(args.write))
    except ZoteroError as e:
        print(e.user_message(), file=sys.stderr)
        return 2


if __name__ == "__main__":
    raise SystemExit(main())
