from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, List, Optional

from fastapi import FastAPI, HTTPException, Request, Response, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, Field

from . import APP_NAME, APP_VERSION
from .annotations import AnnotationStore
from .completion import CompletionClient, build_completion_client
from .config import Settings, load_settings
from .database import Database
from .delivery import DeliveryEvent, ResponseDeliveryController
from .errors import NotFoundError, PersistenceError, ValidationError
from .models import Annotation, Conversation, ExtractedText, Message, TextLayer
from .search import SearchEngine, StaticScale
from .storage import ConversationStore, DocumentRegistry, document_id_for

logger = logging.getLogger(__name__)

# Bounds how much extracted text is inlined into a chat prompt.
MAX_PROMPT_DOCUMENT_CHARS = 20000

allowed_origins = [
    "http://localhost",
    "http://localhost:3000",
    "http://127.0.0.1",
    "http://127.0.0.1:3000",
]


class HealthResponse(BaseModel):
    ok: bool
    service: str
    version: str


class ConversationCreateRequest(BaseModel):
    document_id: Optional[str] = None
    document_name: Optional[str] = None


class ConversationDetailResponse(BaseModel):
    conversation: Conversation
    messages: List[Message]


class MessageCreateRequest(BaseModel):
    role: Optional[str] = None
    content: Optional[str] = None


class ChatRequest(BaseModel):
    content: Optional[str] = None


class DocumentCreateRequest(BaseModel):
    name: str
    owner: Optional[str] = None
    document_id: Optional[str] = None
    extracted: ExtractedText


class DocumentResponse(BaseModel):
    document_id: str
    name: str
    has_fallback: bool


class SearchRequest(BaseModel):
    query: str = ""
    zoom: Optional[float] = None


class AnnotationImportRequest(BaseModel):
    annotations: List[Annotation] = Field(default_factory=list)


class AnnotationSetResponse(BaseModel):
    document_id: str
    annotations: List[Annotation]


def _clean_text(value: Optional[str]) -> str:
    if not value:
        return ""
    return re.sub(r"\s+", " ", value).strip()


def _layer_text(layer: TextLayer) -> str:
    pages = []
    for page in sorted(layer.pages, key=lambda p: p.page):
        text = _clean_text(" ".join(item.text for item in page.items))
        if text:
            pages.append(f"[Page {page.page}]\n{text}")
    return "\n\n".join(pages)


def _build_chat_prompt(
    conversation: Conversation,
    history: List[Message],
    document_text: str,
    question: str,
) -> str:
    sections = [
        "You are answering questions about a PDF the user is reading. "
        "Ground every answer in the document text; say so when the document does not cover the question.",
        f"Document name: {conversation.document_name}",
    ]
    if document_text:
        sections.append(f"Document text:\n{document_text[:MAX_PROMPT_DOCUMENT_CHARS]}")
    if history:
        transcript = "\n".join(f"{message.role}: {_clean_text(message.content)}" for message in history)
        sections.append(f"Conversation so far:\n{transcript}")
    sections.append(f"Question:\n{_clean_text(question)}")
    return "\n\n".join(sections)


def _event_line(event: DeliveryEvent) -> bytes:
    payload = {
        "delivery_id": event.delivery_id,
        "conversation_id": event.conversation_id,
        "state": event.state.value,
        "content": event.draft,
        "message": event.message.model_dump() if event.message else None,
    }
    return (json.dumps(payload) + "\n").encode("utf-8")


def create_app(
    settings: Optional[Settings] = None,
    *,
    completion: Optional[CompletionClient] = None,
) -> FastAPI:
    settings = settings or load_settings()
    db = Database(settings.db_path, timeout=settings.db_timeout)
    conversations = ConversationStore(db)
    documents = DocumentRegistry(db)
    annotations = AnnotationStore(db)
    search_engine = SearchEngine(
        annotations,
        documents,
        separator=settings.search_separator,
        case_sensitive=settings.search_case_sensitive,
        fallback_policy=settings.search_fallback_policy,
    )
    controller = ResponseDeliveryController(
        conversations,
        completion or build_completion_client(settings),
        reveal_interval=settings.reveal_interval,
        reveal_chunk=settings.reveal_chunk,
        completion_timeout=settings.ai_request_timeout,
    )

    @asynccontextmanager
    async def lifespan(_app: FastAPI):  # noqa: ANN202
        db.ensure_schema()
        yield
        await controller.close()

    app = FastAPI(title="Document Session Engine", version=APP_VERSION, lifespan=lifespan)
    app.state.conversations = conversations
    app.state.documents = documents
    app.state.annotations = annotations
    app.state.search_engine = search_engine
    app.state.controller = controller

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(NotFoundError)
    async def not_found_handler(_request: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def validation_handler(_request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(PersistenceError)
    async def persistence_handler(request: Request, exc: PersistenceError) -> JSONResponse:
        logger.error("Storage failure on %s %s: %s", request.method, request.url.path, exc)
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"detail": "Storage unavailable"},
        )

    @app.get("/healthz", response_model=HealthResponse)
    async def healthz() -> HealthResponse:
        """Basic liveness probe to verify the service is up."""
        return HealthResponse(ok=True, service=APP_NAME, version=APP_VERSION)

    @app.post("/conversations", response_model=Conversation, status_code=status.HTTP_201_CREATED)
    async def create_conversation_endpoint(payload: ConversationCreateRequest) -> Conversation:
        return conversations.create_conversation(payload.document_id or "", payload.document_name or "")

    @app.get("/conversations", response_model=List[Conversation])
    async def list_conversations_endpoint(document_id: Optional[str] = None) -> List[Conversation]:
        if document_id:
            return conversations.list_conversations_for_document(document_id)
        return conversations.list_conversations()

    @app.get("/conversations/{conversation_id}", response_model=ConversationDetailResponse)
    async def get_conversation_endpoint(conversation_id: str) -> ConversationDetailResponse:
        conversation = conversations.get_conversation(conversation_id)
        if not conversation:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        return ConversationDetailResponse(
            conversation=conversation,
            messages=conversations.list_messages(conversation_id),
        )

    @app.post(
        "/conversations/{conversation_id}/messages",
        response_model=Message,
        status_code=status.HTTP_201_CREATED,
    )
    async def append_message_endpoint(conversation_id: str, payload: MessageCreateRequest) -> Message:
        return conversations.append_message(conversation_id, payload.role or "", payload.content or "")

    @app.post("/conversations/{conversation_id}/chat")
    async def chat_endpoint(conversation_id: str, payload: ChatRequest) -> StreamingResponse:
        conversation = conversations.get_conversation(conversation_id)
        if not conversation:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Conversation not found")
        question = payload.content or ""
        history = conversations.list_messages(conversation_id)
        document = documents.get_document(conversation.document_id)
        document_text = _layer_text(document[1].primary) if document else ""
        prompt = _build_chat_prompt(conversation, history, document_text, question)
        delivery = await controller.submit(conversation_id, question, prompt=prompt)

        async def events() -> AsyncIterator[bytes]:
            try:
                async for event in delivery.stream():
                    yield _event_line(event)
            finally:
                # Client went away mid-reveal: the draft is abandoned.
                if not delivery.done:
                    delivery.cancel()

        return StreamingResponse(events(), media_type="application/x-ndjson")

    @app.post("/conversations/{conversation_id}/cancel", status_code=status.HTTP_204_NO_CONTENT)
    async def cancel_delivery_endpoint(conversation_id: str) -> Response:
        controller.cancel(conversation_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.post("/documents", response_model=DocumentResponse, status_code=status.HTTP_201_CREATED)
    async def register_document_endpoint(payload: DocumentCreateRequest) -> DocumentResponse:
        document_id = payload.document_id or document_id_for(payload.name, payload.owner)
        documents.register_document(document_id, payload.name, payload.extracted)
        return DocumentResponse(
            document_id=document_id,
            name=payload.name,
            has_fallback=payload.extracted.fallback is not None,
        )

    @app.post("/documents/{document_id}/search", response_model=AnnotationSetResponse)
    async def search_endpoint(document_id: str, payload: SearchRequest) -> AnnotationSetResponse:
        found = search_engine.search_document(document_id, payload.query, StaticScale(payload.zoom))
        return AnnotationSetResponse(document_id=document_id, annotations=found)

    @app.get("/documents/{document_id}/annotations", response_model=AnnotationSetResponse)
    async def export_annotations_endpoint(document_id: str) -> AnnotationSetResponse:
        return AnnotationSetResponse(document_id=document_id, annotations=annotations.get_annotations(document_id))

    @app.put("/documents/{document_id}/annotations", response_model=AnnotationSetResponse)
    async def import_annotations_endpoint(document_id: str, payload: AnnotationImportRequest) -> AnnotationSetResponse:
        replaced = annotations.replace_annotations(document_id, payload.annotations)
        return AnnotationSetResponse(document_id=document_id, annotations=replaced)

    return app
