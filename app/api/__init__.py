"""API router for v1 endpoints."""

from fastapi import APIRouter

from app.api import chat

router = APIRouter()

# Coaching chat streaming
router.include_router(chat.router, tags=["chat"])
