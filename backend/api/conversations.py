"""Conversation CRUD, scoped to the authenticated owner."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth import get_current_user
from database import get_db
from models.user import User
from schemas.conversation import ConversationCreate, ConversationResponse, MessageResponse
from services import chat_store

router = APIRouter(dependencies=[Depends(get_current_user)])


@router.get("/c", response_model=list[ConversationResponse])
def list_conversations(
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return chat_store.list_conversations(db, user.id)


@router.post("/c", status_code=201, response_model=ConversationResponse)
def create_conversation(
    payload: ConversationCreate,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    return chat_store.create_conversation(db, user.id, payload.title)


@router.get("/c/{conversation_id}/messages", response_model=list[MessageResponse])
def list_messages(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if chat_store.get_owned_conversation(db, conversation_id, user.id) is None:
        raise HTTPException(status_code=404, detail="Conversation not found.")
    return chat_store.list_messages(db, conversation_id)


@router.delete("/c/{conversation_id}", status_code=204)
def delete_conversation(
    conversation_id: str,
    db: Session = Depends(get_db),
    user: User = Depends(get_current_user),
):
    if not chat_store.delete_conversation(db, conversation_id, user.id):
        raise HTTPException(status_code=404, detail="Conversation not found.")
