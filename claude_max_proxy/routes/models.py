"""OpenAI-compatible models endpoint."""

from __future__ import annotations

from fastapi import APIRouter
from fastapi.responses import JSONResponse

from claude_max_proxy.config import AVAILABLE_MODELS

router = APIRouter(prefix="/v1", tags=["models"])

MODEL_CREATED_AT = 1700000000


@router.get("/models")
async def list_models() -> JSONResponse:
    items = [
        {
            "id": model_id,
            "object": "model",
            "created": MODEL_CREATED_AT,
            "owned_by": "anthropic",
        }
        for model_id, _ in AVAILABLE_MODELS
    ]
    return JSONResponse({"object": "list", "data": items})
