"""
Service dependencies.

Services are constructed once in the application lifespan and kept on
`app.state`; route handlers receive them through these dependencies
instead of importing module-level singletons.
"""

from __future__ import annotations

from typing import Annotated

from fastapi import Depends, Request

from app.services.job_controller import AnalysisJobController
from app.services.progress_bus import ProgressBus
from app.services.prompts import PromptManager


def get_controller(request: Request) -> AnalysisJobController:
    return request.app.state.controller


def get_bus(request: Request) -> ProgressBus:
    return request.app.state.bus


def get_prompts(request: Request) -> PromptManager:
    return request.app.state.prompts


ControllerDep = Annotated[AnalysisJobController, Depends(get_controller)]
BusDep = Annotated[ProgressBus, Depends(get_bus)]
PromptsDep = Annotated[PromptManager, Depends(get_prompts)]
