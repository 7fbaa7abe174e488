"""
Prompt configuration schemas.

A prompt configuration is everything the inference client needs besides
the image: system text, user text, sampling temperature and output budget.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field


class PromptPreset(str, Enum):
    detailed = "detailed"
    simple = "simple"
    medical = "medical"


class PromptConfig(BaseModel):
    system_prompt: str = Field(..., min_length=1)
    analysis_prompt: str = Field(..., min_length=1)
    temperature: float = Field(0.3, ge=0.0, le=2.0)
    max_tokens: int = Field(1500, ge=100, le=16000)


class PromptsResponse(BaseModel):
    active: PromptConfig
    presets: dict[PromptPreset, PromptConfig]
