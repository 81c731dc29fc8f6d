from __future__ import annotations

import logging
from datetime import datetime
from pathlib import Path

import openpyxl
from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session

from trendr.config import EngineConfig
from trendr.engine import ingest_content
from trendr.models import Topic
from trendr.schemas import ContentIn, CreatorIn, ImportResult

log = logging.getLogger(__name__)


def _s(value: object) -> str:
    """Safely coerce cell value to stripped string."""
    if value is None:
        return ""
    return str(value).strip()


def _col(row: tuple, idx: int) -> object:
    """Safely get a column value from a row tuple."""
    return row[idx] if idx < len(row) else None


def _i(value: object) -> int:
    """Safely coerce cell value to int."""
    if value is None:
        return 0
    try:
        return int(value)
    except (ValueError, TypeError):
        return 0


def _dt(value: object) -> datetime | None:
    """Cell value as datetime: native Excel dates or ISO-8601 text."""
    if isinstance(value, datetime):
        return value
    text = _s(value)
    if not text:
        return None
    try:
        return datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        return None


# ---------------------------------------------------------------------------
# Sheet parsing
# ---------------------------------------------------------------------------

# Column layout of the "Content" sheet (field_name -> column_index)
_CONTENT_COLS = {
    "platform": 0, "platform_id": 1, "creator": 2, "content_type": 3, "text": 4,
    "published_at": 5, "likes": 6, "comments": 7, "topics": 8,
}


def parse_topic_cell(value: object) -> list[tuple[str, float]]:
    """Parse ``slug:confidence;slug:confidence`` (confidence defaults to 1.0)."""
    out: list[tuple[str, float]] = []
    for part in _s(value).split(";"):
        part = part.strip()
        if not part:
            continue
        slug, _, raw = part.partition(":")
        try:
            confidence = float(raw) if raw.strip() else 1.0
        except ValueError:
            confidence = 1.0
        out.append((slug.strip().lower(), confidence))
    return out


def _find_sheet(wb):
    for name in wb.sheetnames:
        if name.casefold() == "content":
            return wb[name]
    return wb[wb.sheetnames[0]]


def _row_to_content(row: tuple) -> ContentIn:
    creator = _s(_col(row, _CONTENT_COLS["creator"]))
    return ContentIn(
        platform=_s(_col(row, _CONTENT_COLS["platform"])).lower(),
        platform_id=_s(_col(row, _CONTENT_COLS["platform_id"])),
        content_type=_s(_col(row, _CONTENT_COLS["content_type"])).lower() or "post",
        text_content=_s(_col(row, _CONTENT_COLS["text"])),
        creator=CreatorIn(platform_id=creator, username=creator) if creator else None,
        engagement_likes=_i(_col(row, _CONTENT_COLS["likes"])),
        engagement_comments=_i(_col(row, _CONTENT_COLS["comments"])),
        published_at=_dt(_col(row, _CONTENT_COLS["published_at"])),
    )


def import_xlsx(file_path: str | Path, session: Session, config: EngineConfig | None = None) -> ImportResult:
    """Ingest pre-tagged content rows from an XLSX workbook. Commits once at the end."""
    file_path = Path(file_path)
    wb = openpyxl.load_workbook(file_path, read_only=True, data_only=True)
    try:
        rows = [r for r in _find_sheet(wb).iter_rows(min_row=2, values_only=True) if r and any(r)]
    finally:
        wb.close()

    slugs = {slug: tid for tid, slug in session.execute(select(Topic.id, Topic.slug)).all()}
    imported = updated = skipped = 0
    unknown: set[str] = set()

    for line, row in enumerate(rows, start=2):
        if not _s(_col(row, _CONTENT_COLS["platform_id"])):
            skipped += 1
            continue
        try:
            content = _row_to_content(row)
        except ValidationError as exc:
            log.warning("Skipping row %d: %s", line, exc.errors()[0].get("msg", "invalid"))
            skipped += 1
            continue

        tags: list[tuple[int, float]] = []
        for slug, confidence in parse_topic_cell(_col(row, _CONTENT_COLS["topics"])):
            if slug in slugs:
                tags.append((slugs[slug], confidence))
            else:
                unknown.add(slug)

        result = ingest_content(session, content, tags, config)
        if result.created:
            imported += 1
        else:
            updated += 1

    session.commit()
    if unknown:
        log.warning("Import referenced unknown topic slugs: %s", sorted(unknown))
    log.info("Imported %d rows from %s (%d updated, %d skipped)", imported, file_path.name, updated, skipped)

    return ImportResult(
        rows_read=len(rows), imported=imported, duplicates_updated=updated,
        skipped_rows=skipped, unknown_topics=sorted(unknown),
    )
