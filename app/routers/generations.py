"""
Generation Requests
===================

- POST /api/generations/images   reserve tokens and queue an image batch
- POST /api/generations/videos   reserve tokens and queue a video batch

Both return 202 with the batch id; clients poll GET /api/batches/{id}.
Restricted, unaffordable or rate-limited requests fail before any tokens
are reserved.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, status
from pydantic import BaseModel, Field

from app.auth.session_auth import get_current_user
from app.core.async_utils import run_sync
from app.services.generation_service import generation_service
from app.services.ledger import AccountSnapshot

logger = logging.getLogger(__name__)

router = APIRouter()


class ImageGenerationRequest(BaseModel):
    prompt: str = Field(default="", max_length=20000)
    mode: Optional[str] = Field(default=None, description="basic | pro; inferred from the model when omitted")
    model: Optional[str] = None
    product_images: List[str] = Field(default_factory=list)
    style_images: List[str] = Field(default_factory=list)


class VideoGenerationRequest(BaseModel):
    prompt: str = Field(default="", max_length=20000)
    mode: Optional[str] = Field(default=None, description="basic | pro | premium")
    model: Optional[str] = None
    images: List[str] = Field(default_factory=list)
    aspect_ratio: Optional[str] = Field(default=None, description="16:9 (default) or 9:16")


class GenerationAccepted(BaseModel):
    batch_id: str
    job_ids: List[str]
    status: str
    queue_position: Optional[int] = None
    eta_seconds: Optional[int] = None
    tokens_reserved: float
    tokens_remaining: float


@router.post("/images", response_model=GenerationAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_image_generation(
    body: ImageGenerationRequest,
    user: AccountSnapshot = Depends(get_current_user),
):
    result = await run_sync(
        generation_service.request_images,
        user,
        body.prompt,
        mode=body.mode,
        model=body.model,
        product_images=body.product_images,
        style_images=body.style_images,
    )
    return result.as_dict()


@router.post("/videos", response_model=GenerationAccepted, status_code=status.HTTP_202_ACCEPTED)
async def create_video_generation(
    body: VideoGenerationRequest,
    user: AccountSnapshot = Depends(get_current_user),
):
    result = await run_sync(
        generation_service.request_video,
        user,
        body.prompt,
        mode=body.mode,
        model=body.model,
        images=body.images,
        aspect_ratio=body.aspect_ratio,
    )
    return result.as_dict()
