"""
Best-effort recovery of truncated model output.

Streaming completions are concatenated chunk by chunk, and the provider can
stop mid-document (token budget) or emit stray control characters. Before
declaring the response malformed we make one repair attempt:

  1. strip C0/C1 control characters,
  2. count unmatched `[`/`]` and `{`/`}`,
  3. append the missing `]` first, then the missing `}`,
  4. parse again.

This is a heuristic: it recovers documents cut off after a complete value,
not documents cut off inside a string or after a dangling key. Because all
brackets are closed before any brace, a cut inside an object nested in an
array (`"immediate": [{"title": ...`) is never recovered either; such output
is reported as malformed rather than guessed at.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any

from app.core.errors import MalformedResponseError

logger = logging.getLogger(__name__)

_CONTROL_CHARS = re.compile(r"[\u0000-\u001F\u007F-\u009F]")


def parse_model_json(text: str) -> Any:
    """Parse `text` as JSON, falling back to one repair pass."""
    try:
        return json.loads(text.strip())
    except json.JSONDecodeError as exc:
        logger.warning(
            "Model output is not valid JSON (%s); attempting repair | chars=%d",
            exc.msg, len(text),
        )
        return repair_json(text)


def repair_json(text: str) -> Any:
    fixed = _CONTROL_CHARS.sub("", text).strip()
    if not fixed:
        raise MalformedResponseError("Model returned an empty response.")

    missing_brackets = fixed.count("[") - fixed.count("]")
    missing_braces = fixed.count("{") - fixed.count("}")
    logger.debug(
        "Repairing JSON | missing_brackets=%d missing_braces=%d",
        missing_brackets, missing_braces,
    )
    fixed += "]" * max(missing_brackets, 0)
    fixed += "}" * max(missing_braces, 0)

    try:
        result = json.loads(fixed)
    except json.JSONDecodeError as exc:
        raise MalformedResponseError(
            f"Response was {len(text)} characters, parsing failed: {exc.msg}"
        ) from exc

    logger.info("Recovered truncated JSON by closing brackets/braces")
    return result
