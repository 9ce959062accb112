"""Shared test fixtures."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from docsession.annotations import AnnotationStore
from docsession.database import Database
from docsession.models import PageText, TextItem, TextLayer
from docsession.storage import ConversationStore, DocumentRegistry

PAGE_WIDTH = 600.0
PAGE_HEIGHT = 800.0
CHAR_WIDTH = 5.0
LINE_HEIGHT = 10.0


def make_layer(pages: Dict[int, List[str]]) -> TextLayer:
    """One text item per line, 5 units per character, lines 20 units apart."""
    return TextLayer(
        pages=[
            PageText(
                page=number,
                width=PAGE_WIDTH,
                height=PAGE_HEIGHT,
                items=[
                    TextItem(
                        text=line,
                        x=10.0,
                        y=20.0 * (index + 1),
                        width=CHAR_WIDTH * len(line),
                        height=LINE_HEIGHT,
                    )
                    for index, line in enumerate(lines)
                ],
            )
            for number, lines in pages.items()
        ]
    )


class FakeCompletion:
    def __init__(
        self,
        answer: Optional[str] = None,
        *,
        error: Optional[Exception] = None,
        delay: float = 0.0,
    ) -> None:
        self.answer = answer
        self.error = error
        self.delay = delay
        self.prompts: List[str] = []

    async def complete(self, prompt: str) -> Optional[str]:
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.answer


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "docsession.db"


@pytest.fixture
def db(db_path: Path) -> Database:
    return Database(db_path, timeout=5.0)


@pytest.fixture
def conversation_store(db: Database) -> ConversationStore:
    return ConversationStore(db)


@pytest.fixture
def annotation_store(db: Database) -> AnnotationStore:
    return AnnotationStore(db)


@pytest.fixture
def registry(db: Database) -> DocumentRegistry:
    return DocumentRegistry(db)
