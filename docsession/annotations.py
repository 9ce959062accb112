from __future__ import annotations

import json
import logging
import sqlite3
import threading
from typing import Iterable, List

from .database import Database
from .models import Annotation, Rect
from .storage import _now_iso

logger = logging.getLogger(__name__)

LOCK_STRIPES = 64


def _annotation_from_row(row: sqlite3.Row) -> Annotation:
    return Annotation(
        id=row["annotation_id"],
        document_id=row["document_id"],
        keyword=row["keyword"],
        text=row["text"],
        page=row["page"],
        rects=[Rect(**rect) for rect in json.loads(row["rects_json"])],
        source_text=row["source_text"],
    )


def _insert_annotations(conn: sqlite3.Connection, annotations: Iterable[Annotation]) -> int:
    created_at = _now_iso()
    inserted = 0
    for annotation in annotations:
        result = conn.execute(
            """
            INSERT OR IGNORE INTO annotations (
                annotation_id,
                document_id,
                keyword,
                text,
                page,
                rects_json,
                source_text,
                created_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                annotation.id,
                annotation.document_id,
                annotation.keyword,
                annotation.text,
                annotation.page,
                json.dumps([rect.model_dump() for rect in annotation.rects]),
                annotation.source_text,
                created_at,
            ),
        )
        inserted += result.rowcount
    return inserted


def _select_annotations(conn: sqlite3.Connection, document_id: str) -> List[Annotation]:
    rows = conn.execute(
        "SELECT * FROM annotations WHERE document_id = ? ORDER BY rowid",
        (document_id,),
    ).fetchall()
    return [_annotation_from_row(row) for row in rows]


class AnnotationStore:
    """Positioned highlights keyed by document.

    Annotation ids are derived from ``(document_id, page, geometry, keyword)``,
    so the primary key doubles as the identity check for merge-append.
    """

    def __init__(self, db: Database, *, lock_stripes: int = LOCK_STRIPES) -> None:
        self.db = db
        # Striped by document id; at most one stripe is held at a time.
        self._locks: List[threading.Lock] = [threading.Lock() for _ in range(max(1, lock_stripes))]

    def _document_lock(self, document_id: str) -> threading.Lock:
        return self._locks[hash(document_id) % len(self._locks)]

    def get_annotations(self, document_id: str) -> List[Annotation]:
        with self.db.connect() as conn:
            return _select_annotations(conn, document_id)

    def merge_annotations(self, document_id: str, new_annotations: Iterable[Annotation]) -> List[Annotation]:
        bound = [annotation.bind(document_id) for annotation in new_annotations]
        with self._document_lock(document_id):
            with self.db.connect(write=True) as conn:
                inserted = _insert_annotations(conn, bound)
                merged = _select_annotations(conn, document_id)
        logger.info(
            "Merged %d new annotation(s) into document %s (%d total)",
            inserted,
            document_id,
            len(merged),
        )
        return merged

    def replace_annotations(self, document_id: str, annotations: Iterable[Annotation]) -> List[Annotation]:
        bound = [annotation.bind(document_id) for annotation in annotations]
        with self._document_lock(document_id):
            with self.db.connect(write=True) as conn:
                conn.execute("DELETE FROM annotations WHERE document_id = ?", (document_id,))
                _insert_annotations(conn, bound)
                replaced = _select_annotations(conn, document_id)
        logger.info("Replaced annotations for document %s (%d total)", document_id, len(replaced))
        return replaced
