"""
Chat API router.
POST   /conversations                  — create conversation
GET    /conversations                  — list all
GET    /conversations/{id}             — get with messages and pending permission requests
DELETE /conversations/{id}             — delete (cancels a running turn)
POST   /conversations/{id}/chat        — send message (returns SSE stream)
POST   /conversations/{id}/approve     — answer a pending permission request
POST   /conversations/{id}/cancel      — cancel the running turn
PUT    /conversations/{id}/permissions — toggle "bypass all checks"
"""
from __future__ import annotations

import json
import logging
import time
from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from codeforge.agent.conversations import Conversation, ConversationStore
from codeforge.agent.loop import TurnInProgressError
from codeforge.agent.permissions import Decision

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/conversations", tags=["chat"])


class CreateConversationRequest(BaseModel):
    provider: Optional[str] = None
    model: Optional[str] = None
    title: str = "New conversation"
    files: list[str] = []


class SendMessageRequest(BaseModel):
    content: str


class ApproveRequest(BaseModel):
    request_id: str
    approved: bool
    remember: bool = False  # approve every future call of this tool


class PermissionsRequest(BaseModel):
    bypass_all: bool


def get_store(request: Request) -> ConversationStore:
    return request.app.state.conversations


def _get_conv(conv_id: str, store: ConversationStore) -> Conversation:
    conv = store.get(conv_id)
    if conv is None:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return conv


@router.post("")
async def create_conv(body: CreateConversationRequest, store: ConversationStore = Depends(get_store)):
    try:
        conv = store.create(provider=body.provider, model=body.model, title=body.title, files=body.files)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return conv.summary()


@router.get("")
async def list_convs(store: ConversationStore = Depends(get_store)):
    return [c.summary() for c in store.list()]


@router.get("/{conv_id}")
async def get_conv(conv_id: str, store: ConversationStore = Depends(get_store)):
    return _get_conv(conv_id, store).detail()


@router.delete("/{conv_id}")
async def del_conv(conv_id: str, store: ConversationStore = Depends(get_store)):
    if not await store.delete(conv_id):
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"ok": True}


@router.post("/{conv_id}/approve")
async def approve_tool(conv_id: str, body: ApproveRequest, store: ConversationStore = Depends(get_store)):
    """Approve or reject a pending tool execution."""
    conv = _get_conv(conv_id, store)
    if not body.approved:
        decision = Decision.DENY
    elif body.remember:
        decision = Decision.APPROVE_ALWAYS
    else:
        decision = Decision.APPROVE
    if not conv.orchestrator.gate.respond(body.request_id, decision):
        raise HTTPException(status_code=404, detail="Permission request not found")
    return {"ok": True, "decision": decision.value}


@router.post("/{conv_id}/cancel")
async def cancel_turn(conv_id: str, store: ConversationStore = Depends(get_store)):
    conv = _get_conv(conv_id, store)
    cancelled = await conv.orchestrator.cancel()
    return {"ok": True, "cancelled": cancelled}


@router.put("/{conv_id}/permissions")
async def set_permissions(conv_id: str, body: PermissionsRequest, store: ConversationStore = Depends(get_store)):
    conv = _get_conv(conv_id, store)
    conv.orchestrator.gate.bypass_all = body.bypass_all
    return {"ok": True, "bypass_all": body.bypass_all}


@router.post("/{conv_id}/chat")
async def send_message(conv_id: str, body: SendMessageRequest, store: ConversationStore = Depends(get_store)):
    conv = _get_conv(conv_id, store)
    if conv.orchestrator.busy:
        raise HTTPException(status_code=409, detail="A turn is already running for this conversation")
    if conv.title == "New conversation" and body.content.strip():
        conv.title = body.content.strip().split("\n")[0][:50]
    conv.updated_at = int(time.time())

    async def event_stream() -> AsyncIterator[str]:
        try:
            async for event in conv.orchestrator.run_turn(body.content):
                payload = json.dumps(jsonable_encoder(event))
                yield f"data: {payload}\n\n"
        except TurnInProgressError as e:
            yield f"data: {json.dumps({'type': 'error', 'data': {'message': str(e)}})}\n\n"
        conv.updated_at = int(time.time())
        yield "data: [DONE]\n\n"

    return StreamingResponse(event_stream(), media_type="text/event-stream")
