"""Users API: signup and current user."""

from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from auth import get_current_user, issue_token, token_expires_at
from database import get_db
from models.user import User
from schemas.auth import SignupRequest, TokenResponse, UserResponse
from services import chat_store

router = APIRouter()


@router.post("", status_code=201, response_model=TokenResponse, responses={409: {"description": "User already exists"}})
def signup(payload: SignupRequest, db: Session = Depends(get_db)):
    try:
        user = chat_store.create_user(db, payload.username, payload.email, payload.password)
    except chat_store.DuplicateUserError:
        raise HTTPException(status_code=409, detail="Username or email already exists.")

    return TokenResponse(
        token=issue_token(user.id),
        expires_at=token_expires_at(),
        user=UserResponse.model_validate(user),
    )


@router.get("/me", response_model=UserResponse)
def me(user: User = Depends(get_current_user)):
    return user
