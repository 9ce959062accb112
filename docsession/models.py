from __future__ import annotations

import json
import uuid
from typing import List, Literal, Optional

from pydantic import BaseModel, Field, field_validator

Role = Literal["user", "assistant"]
SourceText = Literal["primary", "fallback"]

ROLES = ("user", "assistant")

# Geometry is compared after rounding so float noise from the zoom product
# does not produce distinct identities for the same highlight.
GEOMETRY_PRECISION = 4


class Conversation(BaseModel):
    id: str
    document_id: str
    document_name: str
    created_at: str
    updated_at: str


class Message(BaseModel):
    id: str
    conversation_id: str
    role: Role
    content: str
    created_at: str


class Rect(BaseModel):
    x1: float
    y1: float
    x2: float
    y2: float
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)

    def rounded(self) -> List[float]:
        return [
            round(value, GEOMETRY_PRECISION)
            for value in (self.x1, self.y1, self.x2, self.y2, self.width, self.height)
        ]


class Annotation(BaseModel):
    id: str = ""
    document_id: str = ""
    keyword: str
    text: str = ""
    page: int = Field(..., ge=1)
    rects: List[Rect] = Field(..., min_length=1)
    source_text: SourceText = "primary"

    def identity_key(self) -> str:
        """Canonical form of ``(document_id, page, geometry, keyword)``."""
        return json.dumps(
            [self.document_id, self.page, [rect.rounded() for rect in self.rects], self.keyword],
            separators=(",", ":"),
        )

    def bind(self, document_id: str) -> "Annotation":
        """Return a copy attached to ``document_id`` with its identity-derived id."""
        bound = self.model_copy(update={"document_id": document_id})
        bound.id = str(uuid.uuid5(uuid.NAMESPACE_URL, bound.identity_key()))
        return bound


class TextItem(BaseModel):
    text: str
    x: float
    y: float
    width: float = Field(..., ge=0)
    height: float = Field(..., ge=0)


class PageText(BaseModel):
    page: int = Field(..., ge=1)
    width: float = Field(..., gt=0)
    height: float = Field(..., gt=0)
    items: List[TextItem] = Field(default_factory=list)


class TextLayer(BaseModel):
    pages: List[PageText] = Field(default_factory=list)

    @field_validator("pages")
    @classmethod
    def validate_unique_pages(cls, value: List[PageText]) -> List[PageText]:
        numbers = [page.page for page in value]
        if len(numbers) != len(set(numbers)):
            raise ValueError("page numbers must be unique")
        return value


class ExtractedText(BaseModel):
    primary: TextLayer
    # Present only when the document went through the lossy image/OCR pipeline.
    fallback: Optional[TextLayer] = None
