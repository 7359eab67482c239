from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field

from app.api.v1.guide import service_error_response
from app.guide.app.services import ChatService, GuideServiceError, get_chat_service
from app.guide.domain.models import ChatMessageIn, ChatTranscript

router = APIRouter(prefix="/chat", tags=["chat"])


class ChatStartReq(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    conversation_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    entrypoint: str = Field(default="other", max_length=32)
    mode: str = Field(default="general", max_length=32)


class ChatNoteReq(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    conversation_id: str = Field(min_length=1, max_length=128)
    text: str = Field(min_length=1, max_length=400)
    keywords: list[str] = Field(default_factory=list, max_length=8)
    expires_at: Optional[datetime] = None


class ChatEndReq(BaseModel):
    user_id: str = Field(min_length=1, max_length=128)
    conversation_id: str = Field(min_length=1, max_length=128)
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    messages: list[ChatMessageIn] = Field(min_length=2, max_length=500)


class ChatEndResp(BaseModel):
    success: bool = True
    savedTranscript: bool
    sessionSummaryCreated: bool
    consolidated: dict[str, Any] = Field(default_factory=dict)


@router.post("/start")
def chat_start(req: ChatStartReq, service: ChatService = Depends(get_chat_service)):
    return service.start(req.user_id, req.conversation_id, entrypoint=req.entrypoint, mode=req.mode)


@router.post("/notes")
def chat_add_note(req: ChatNoteReq, service: ChatService = Depends(get_chat_service)):
    try:
        return service.add_note(
            req.user_id,
            req.conversation_id,
            req.text,
            keywords=req.keywords,
            expires_at=req.expires_at,
        )
    except GuideServiceError as exc:
        return service_error_response(exc)


@router.post("/end", response_model=ChatEndResp)
def chat_end(req: ChatEndReq, service: ChatService = Depends(get_chat_service)):
    transcript = ChatTranscript(
        session_id=req.session_id or req.conversation_id,
        started_at=req.started_at,
        ended_at=req.ended_at or datetime.now(timezone.utc),
        messages=req.messages,
    )
    return service.end(req.user_id, req.conversation_id, transcript)


@router.get("/sessions")
def chat_list_sessions(
    user_id: str = Query(min_length=1, max_length=128),
    limit: int = Query(default=50, ge=1, le=100),
    offset: int = Query(default=0, ge=0),
    service: ChatService = Depends(get_chat_service),
):
    return service.list_sessions(user_id, limit=limit, offset=offset)


@router.get("/sessions/{session_id}")
def chat_get_session(
    session_id: str,
    user_id: str = Query(min_length=1, max_length=128),
    service: ChatService = Depends(get_chat_service),
):
    try:
        return service.get_session(user_id, session_id)
    except GuideServiceError as exc:
        return service_error_response(exc)
