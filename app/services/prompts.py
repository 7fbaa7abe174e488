"""
Prompt presets and the runtime-selectable active prompt.

The active configuration is persisted to PROMPT_CONFIG_PATH so it survives
restarts. Persistence is best effort: on read-only filesystems the change
still applies to the running process and a warning is logged.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

from pydantic import ValidationError

from app.schemas.prompts import PromptConfig, PromptPreset

logger = logging.getLogger(__name__)

_RESPONSE_SCHEMA = """\
Respond with ONLY a valid JSON object (no markdown, no explanation) using this schema:

{
  "overallScore": <integer 1-100>,
  "skinHealth": <integer 1-100>,
  "eyeHealth": <integer 1-100>,
  "circulation": <integer 1-100>,
  "symmetry": <integer 1-100>,
  "estimatedAge": <integer>,
  "conversationalAnalysis": {
    "facialFeatureBreakdown": <string>,
    "visualAgeEstimator": <string>,
    "healthRiskReader": <string>,
    "emotionalStateScanner": <string>,
    "selfHealingStrategist": <string>
  },
  "analysisData": {
    "skinAnalysis": {"hydration": <string>, "pigmentation": <string>,
                     "texture": <string>, "elasticity": <string>},
    "eyeAnalysis": {"underEyeCircles": <string>, "puffiness": <string>,
                    "brightness": <string>, "symmetry": <string>}
  },
  "recommendations": {
    "immediate": [{"title": <string>, "description": <string>}],
    "nutritional": [{"title": <string>, "description": <string>}],
    "lifestyle": [{"title": <string>, "description": <string>}]
  }
}\
"""

PRESETS: dict[PromptPreset, PromptConfig] = {
    PromptPreset.detailed: PromptConfig(
        system_prompt=(
            "You are a facial wellness analyst with a background in dermatology "
            "and lifestyle health. Give concise, practical observations based on "
            "visible facial indicators. You do not diagnose medical conditions."
        ),
        analysis_prompt=(
            "Analyse this face for visible wellness indicators: skin condition, "
            "eye area, circulation and facial symmetry. Estimate apparent age and "
            "give 3-5 specific, practical recommendations.\n\n" + _RESPONSE_SCHEMA
        ),
        temperature=0.3,
        max_tokens=1500,
    ),
    PromptPreset.simple: PromptConfig(
        system_prompt=(
            "You are a facial analysis expert focused on general appearance and "
            "wellness observations."
        ),
        analysis_prompt=(
            "Analyse this face for general appearance, skin health and wellness "
            "indicators, with practical recommendations.\n\n" + _RESPONSE_SCHEMA
        ),
        temperature=0.5,
        max_tokens=2000,
    ),
    PromptPreset.medical: PromptConfig(
        system_prompt=(
            "You are a clinician experienced in visual health assessment. Point out "
            "indicators that may warrant professional follow-up."
        ),
        analysis_prompt=(
            "Analyse this face from a health perspective, focusing on visible "
            "indicators and potential concerns.\n\n" + _RESPONSE_SCHEMA
        ),
        temperature=0.3,
        max_tokens=3000,
    ),
}

DEFAULT_PRESET = PromptPreset.detailed


class PromptManager:
    def __init__(self, config_path: str | Path) -> None:
        self.config_path = Path(config_path)
        self._active = self._load()

    def _load(self) -> PromptConfig:
        if self.config_path.exists():
            try:
                return PromptConfig.model_validate_json(self.config_path.read_text("utf-8"))
            except (OSError, ValidationError) as exc:
                logger.warning(
                    "Ignoring prompt config at %s, using default: %s", self.config_path, exc
                )
        return PRESETS[DEFAULT_PRESET]

    def _save(self) -> None:
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
            self.config_path.write_text(
                json.dumps(self._active.model_dump(), indent=2), encoding="utf-8"
            )
            logger.info("Prompt configuration saved to %s", self.config_path)
        except OSError as exc:
            logger.warning("Failed to persist prompt configuration: %s", exc)

    @property
    def active(self) -> PromptConfig:
        return self._active

    def update(self, config: PromptConfig) -> PromptConfig:
        self._active = config
        self._save()
        return self._active

    def use_preset(self, preset: PromptPreset) -> PromptConfig:
        return self.update(PRESETS[preset])

    def reset(self) -> PromptConfig:
        return self.use_preset(DEFAULT_PRESET)

    @staticmethod
    def presets() -> dict[PromptPreset, PromptConfig]:
        return dict(PRESETS)
