"""Login endpoint."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth import issue_token, token_expires_at
from database import get_db
from schemas.auth import LoginRequest, TokenResponse, UserResponse
from services import chat_store

logger = logging.getLogger(__name__)

router = APIRouter()


@router.post("/login", response_model=TokenResponse, responses={401: {"description": "Invalid credentials"}})
def login(payload: LoginRequest, db: Session = Depends(get_db)):
    user = chat_store.authenticate_user(db, payload.username, payload.password)
    if not user:
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    logger.info("User %s logged in", user.username)
    return TokenResponse(
        token=issue_token(user.id),
        expires_at=token_expires_at(),
        user=UserResponse.model_validate(user),
    )
