"""Text extraction for PDF attachments stored as linked files on this machine."""

from __future__ import annotations

import logging
import os

import pdfplumber

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


def local_pdf_path(data: dict) -> str | None:
    """Absolute path of a PDF attachment, or None when it cannot be read locally.

    Stored files carry ``attachments:``-relative paths resolved against a
    base directory this server does not know, so only absolute paths count.
    """
    if data.get("itemType") != "attachment" or data.get("contentType") != PDF_CONTENT_TYPE:
        return None
    path = data.get("path") or ""
    if not path or path.startswith("attachments:") or not os.path.isabs(path):
        return None
    return path


def read_pdf_pages(path: str) -> list[str]:
    """Text of every page, in order. Blocking; run it off the event loop."""
    with pdfplumber.open(path) as pdf:
        pages = [page.extract_text() or "" for page in pdf.pages]
    logger.debug(f"read {len(pages)} pages from {path}")
    return pages


def select_pages(pages: list[str], start_page: int | None = None, end_page: int | None = None) -> str:
    first = (start_page - 1) if start_page else 0
    last = end_page if end_page else len(pages)
    return "\n\n".join(pages[first:last])
