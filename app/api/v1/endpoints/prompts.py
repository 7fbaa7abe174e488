"""
Prompt configuration endpoints.

GET    /v1/prompts                   — active configuration and built-in presets
PUT    /v1/prompts/active            — replace the active configuration
POST   /v1/prompts/active/{preset}   — switch to a built-in preset
DELETE /v1/prompts/active            — back to the default preset

Changes apply to analyses started afterwards; running ones keep the
configuration they started with.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter

from app.api.deps import PromptsDep
from app.core.security import AuthDep
from app.schemas.prompts import PromptConfig, PromptPreset, PromptsResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/prompts", tags=["Prompt configuration"])


@router.get("", response_model=PromptsResponse, summary="Show prompt configuration")
async def get_prompts(prompts: PromptsDep, _auth: AuthDep) -> PromptsResponse:
    return PromptsResponse(active=prompts.active, presets=prompts.presets())


@router.put("/active", response_model=PromptConfig, summary="Replace the active prompt")
async def update_active_prompt(
    body: PromptConfig, prompts: PromptsDep, _auth: AuthDep
) -> PromptConfig:
    logger.info("Active prompt replaced (temperature=%s)", body.temperature)
    return prompts.update(body)


@router.post(
    "/active/{preset}",
    response_model=PromptConfig,
    summary="Switch to a built-in prompt preset",
)
async def use_prompt_preset(
    preset: PromptPreset, prompts: PromptsDep, _auth: AuthDep
) -> PromptConfig:
    logger.info("Active prompt switched to preset %s", preset.value)
    return prompts.use_preset(preset)


@router.delete("/active", response_model=PromptConfig, summary="Reset to the default prompt")
async def reset_prompt(prompts: PromptsDep, _auth: AuthDep) -> PromptConfig:
    return prompts.reset()
