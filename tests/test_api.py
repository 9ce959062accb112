"""Tests for the HTTP surface."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Dict, Iterator, List

import pytest
from fastapi.testclient import TestClient

from docsession.config import Settings
from docsession.delivery import TRANSPORT_ERROR_MESSAGE
from docsession.errors import ExternalCollaboratorError
from docsession.main import create_app
from tests.conftest import FakeCompletion, make_layer


@pytest.fixture
def completion() -> FakeCompletion:
    return FakeCompletion("The total is $42.")


@pytest.fixture
def client(tmp_path: Path, completion: FakeCompletion) -> Iterator[TestClient]:
    settings = Settings(db_path=tmp_path / "api.db", reveal_interval=0.0)
    app = create_app(settings, completion=completion)
    with TestClient(app) as test_client:
        yield test_client


def _lines(text: str) -> List[Dict[str, Any]]:
    return [json.loads(line) for line in text.splitlines() if line.strip()]


def _register(client: TestClient) -> str:
    resp = client.post(
        "/documents",
        json={
            "name": "report.pdf",
            "document_id": "doc1",
            "extracted": {
                "primary": make_layer({1: ["Summary of results"]}).model_dump(),
                "fallback": make_layer({2: ["Revenue grew 5%."]}).model_dump(),
            },
        },
    )
    assert resp.status_code == 201
    return resp.json()["document_id"]


def test_healthz(client: TestClient) -> None:
    resp = client.get("/healthz")
    assert resp.status_code == 200
    assert resp.json()["ok"] is True


def test_conversation_lifecycle(client: TestClient) -> None:
    resp = client.post("/conversations", json={"document_id": "doc1", "document_name": "report.pdf"})
    assert resp.status_code == 201
    conversation = resp.json()

    resp = client.post(
        f"/conversations/{conversation['id']}/messages",
        json={"role": "user", "content": "Hi"},
    )
    assert resp.status_code == 201

    detail = client.get(f"/conversations/{conversation['id']}").json()
    assert detail["conversation"]["id"] == conversation["id"]
    assert [m["content"] for m in detail["messages"]] == ["Hi"]
    assert detail["conversation"]["updated_at"] == detail["messages"][0]["created_at"]

    listed = client.get("/conversations").json()
    assert [c["id"] for c in listed] == [conversation["id"]]
    assert client.get("/conversations", params={"document_id": "other"}).json() == []


def test_create_conversation_missing_fields(client: TestClient) -> None:
    resp = client.post("/conversations", json={"document_id": "doc1"})
    assert resp.status_code == 400


def test_unknown_conversation(client: TestClient) -> None:
    assert client.get("/conversations/missing").status_code == 404
    resp = client.post("/conversations/missing/messages", json={"role": "user", "content": "Hi"})
    assert resp.status_code == 404
    assert client.post("/conversations/missing/chat", json={"content": "Hi"}).status_code == 404


def test_append_message_validation(client: TestClient) -> None:
    conversation = client.post("/conversations", json={"document_id": "d", "document_name": "n"}).json()
    resp = client.post(f"/conversations/{conversation['id']}/messages", json={"role": "robot", "content": "x"})
    assert resp.status_code == 400
    resp = client.post(f"/conversations/{conversation['id']}/messages", json={"role": "user"})
    assert resp.status_code == 400


def test_chat_streams_reveal_and_persists(client: TestClient, completion: FakeCompletion) -> None:
    _register(client)
    conversation = client.post("/conversations", json={"document_id": "doc1", "document_name": "report.pdf"}).json()

    resp = client.post(f"/conversations/{conversation['id']}/chat", json={"content": "What is the total?"})

    assert resp.status_code == 200
    events = _lines(resp.text)
    assert events[-1]["state"] == "persisted"
    assert events[-1]["message"]["content"] == "The total is $42."
    revealing = [e["content"] for e in events if e["state"] == "revealing" and e["content"]]
    assert revealing[-1] == "The total is $42."
    assert all(later.startswith(earlier) for earlier, later in zip(revealing, revealing[1:]))

    (prompt,) = completion.prompts
    assert "Summary of results" in prompt
    assert "What is the total?" in prompt

    messages = client.get(f"/conversations/{conversation['id']}").json()["messages"]
    assert [(m["role"], m["content"]) for m in messages] == [
        ("user", "What is the total?"),
        ("assistant", "The total is $42."),
    ]


def test_chat_transport_error(client: TestClient, completion: FakeCompletion) -> None:
    completion.error = ExternalCollaboratorError("unreachable")
    conversation = client.post("/conversations", json={"document_id": "doc1", "document_name": "report.pdf"}).json()

    events = _lines(client.post(f"/conversations/{conversation['id']}/chat", json={"content": "Hi"}).text)

    assert events[-1]["state"] == "failed"
    assert events[-1]["message"]["content"] == TRANSPORT_ERROR_MESSAGE


def test_cancel_without_delivery(client: TestClient) -> None:
    assert client.post("/conversations/anything/cancel").status_code == 204


def test_search_falls_back_and_exports(client: TestClient) -> None:
    document_id = _register(client)

    resp = client.post(f"/documents/{document_id}/search", json={"query": "revenue", "zoom": 1.0})

    assert resp.status_code == 200
    annotations = resp.json()["annotations"]
    assert len(annotations) == 1
    assert annotations[0]["page"] == 2
    assert annotations[0]["source_text"] == "fallback"

    exported = client.get(f"/documents/{document_id}/annotations").json()["annotations"]
    assert exported == annotations


def test_search_unknown_document(client: TestClient) -> None:
    assert client.post("/documents/missing/search", json={"query": "x"}).status_code == 404


def test_import_replaces_annotations(client: TestClient) -> None:
    document_id = _register(client)
    client.post(f"/documents/{document_id}/search", json={"query": "summary"})

    imported = {
        "annotations": [
            {
                "keyword": "results",
                "page": 1,
                "rects": [{"x1": 1, "y1": 2, "x2": 3, "y2": 4, "width": 600, "height": 800}],
            }
        ]
    }
    resp = client.put(f"/documents/{document_id}/annotations", json=imported)

    assert resp.status_code == 200
    annotations = resp.json()["annotations"]
    assert [a["keyword"] for a in annotations] == ["results"]
    assert annotations[0]["document_id"] == document_id
    assert annotations[0]["id"]


def test_register_document_derives_id(client: TestClient) -> None:
    resp = client.post(
        "/documents",
        json={"name": "notes.pdf", "owner": "a@example.com", "extracted": {"primary": {"pages": []}}},
    )
    assert resp.status_code == 201
    body = resp.json()
    assert body["has_fallback"] is False
    assert body["document_id"]
