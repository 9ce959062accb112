from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from typing import List, Optional, Protocol, Tuple

from .annotations import AnnotationStore
from .config import FALLBACK_ALL_OR_NOTHING, FALLBACK_PER_KEYWORD
from .errors import NotFoundError, ValidationError
from .models import Annotation, PageText, Rect, SourceText, TextLayer
from .storage import DocumentRegistry

logger = logging.getLogger(__name__)

DEFAULT_SCALE = 1.0


class ScaleSource(Protocol):
    def current_scale(self) -> float: ...


@dataclass
class StaticScale:
    """Scale reported by a client that sends its zoom with the request."""

    scale: Optional[float] = None

    def current_scale(self) -> float:
        if self.scale is None:
            raise LookupError("viewer did not report a scale")
        return self.scale


def resolve_scale(viewer: Optional[ScaleSource]) -> float:
    if viewer is None:
        return DEFAULT_SCALE
    try:
        scale = float(viewer.current_scale())
    except (LookupError, AttributeError, TypeError, ValueError) as exc:
        logger.warning("Unable to determine current zoom level (%s). Using default zoom of 1.", exc)
        return DEFAULT_SCALE
    if not math.isfinite(scale) or scale <= 0:
        logger.warning("Ignoring invalid zoom level %r. Using default zoom of 1.", scale)
        return DEFAULT_SCALE
    return scale


def split_keywords(raw: str, separator: str = "|") -> List[str]:
    if not raw:
        return []
    return [term.strip() for term in raw.split(separator) if term.strip()]


def _page_index(page: PageText) -> Tuple[str, List[Tuple[int, int, int]]]:
    """Concatenate a page's items, remembering where each item landed.

    Adjacent items that would otherwise run two words together are joined by
    a single synthetic space which belongs to no item.
    """
    parts: List[str] = []
    spans: List[Tuple[int, int, int]] = []
    cursor = 0
    for index, item in enumerate(page.items):
        if not item.text:
            continue
        if parts and not parts[-1][-1:].isspace() and not item.text[:1].isspace():
            parts.append(" ")
            cursor += 1
        spans.append((cursor, cursor + len(item.text), index))
        parts.append(item.text)
        cursor += len(item.text)
    return "".join(parts), spans


def _match_rects(
    page: PageText,
    spans: List[Tuple[int, int, int]],
    start: int,
    end: int,
    scale: float,
) -> List[Rect]:
    rects: List[Rect] = []
    for span_start, span_end, index in spans:
        lo = max(start, span_start)
        hi = min(end, span_end)
        if lo >= hi:
            continue
        item = page.items[index]
        if item.width <= 0:
            continue
        char_width = item.width / len(item.text)
        x1 = item.x + char_width * (lo - span_start)
        x2 = item.x + char_width * (hi - span_start)
        rects.append(
            Rect(
                x1=x1 * scale,
                y1=item.y * scale,
                x2=x2 * scale,
                y2=(item.y + item.height) * scale,
                width=page.width * scale,
                height=page.height * scale,
            )
        )
    return rects


def find_matches(
    layer: TextLayer,
    keyword: str,
    *,
    scale: float = DEFAULT_SCALE,
    case_sensitive: bool = False,
    source_text: SourceText = "primary",
) -> List[Annotation]:
    """Every occurrence of ``keyword`` in ``layer`` as an unbound annotation."""
    flags = 0 if case_sensitive else re.IGNORECASE
    pattern = re.compile(re.escape(keyword), flags)
    matches: List[Annotation] = []
    for page in layer.pages:
        text, spans = _page_index(page)
        for match in pattern.finditer(text):
            rects = _match_rects(page, spans, match.start(), match.end(), scale)
            if not rects:
                continue
            matches.append(
                Annotation(
                    keyword=keyword,
                    text=match.group(0),
                    page=page.page,
                    rects=rects,
                    source_text=source_text,
                )
            )
    return matches


class SearchEngine:
    def __init__(
        self,
        store: AnnotationStore,
        registry: Optional[DocumentRegistry] = None,
        *,
        separator: str = "|",
        case_sensitive: bool = False,
        fallback_policy: str = FALLBACK_ALL_OR_NOTHING,
    ) -> None:
        if not separator:
            raise ValidationError("separator must not be empty")
        if fallback_policy not in {FALLBACK_ALL_OR_NOTHING, FALLBACK_PER_KEYWORD}:
            raise ValidationError(f"Unknown fallback policy: {fallback_policy}")
        self.store = store
        self.registry = registry
        self.separator = separator
        self.case_sensitive = case_sensitive
        self.fallback_policy = fallback_policy

    def _scan(self, layer: TextLayer, keywords: List[str], scale: float, source_text: SourceText) -> List[List[Annotation]]:
        return [
            find_matches(
                layer,
                keyword,
                scale=scale,
                case_sensitive=self.case_sensitive,
                source_text=source_text,
            )
            for keyword in keywords
        ]

    def search(
        self,
        document_id: str,
        query: str,
        primary: TextLayer,
        fallback: Optional[TextLayer] = None,
        viewer: Optional[ScaleSource] = None,
    ) -> List[Annotation]:
        """Highlight every keyword in ``query`` and return the document's merged set."""
        keywords = split_keywords(query, self.separator)
        if not keywords:
            return []
        scale = resolve_scale(viewer)

        per_keyword = self._scan(primary, keywords, scale, "primary")
        found: List[Annotation] = [annotation for matches in per_keyword for annotation in matches]

        if fallback is not None:
            if self.fallback_policy == FALLBACK_ALL_OR_NOTHING:
                if not found:
                    logger.warning("No primary matches for %r; searching fallback text", keywords)
                    found = [
                        annotation
                        for matches in self._scan(fallback, keywords, scale, "fallback")
                        for annotation in matches
                    ]
            else:
                missing = [keyword for keyword, matches in zip(keywords, per_keyword) if not matches]
                if missing:
                    logger.warning("No primary matches for %r; searching fallback text", missing)
                    for matches in self._scan(fallback, missing, scale, "fallback"):
                        found.extend(matches)

        if not found:
            return self.store.get_annotations(document_id)
        return self.store.merge_annotations(document_id, found)

    def search_document(self, document_id: str, query: str, viewer: Optional[ScaleSource] = None) -> List[Annotation]:
        if self.registry is None:
            raise NotFoundError(f"Document {document_id} not found")
        document = self.registry.get_document(document_id)
        if document is None:
            raise NotFoundError(f"Document {document_id} not found")
        _, extracted = document
        return self.search(document_id, query, extracted.primary, extracted.fallback, viewer)
