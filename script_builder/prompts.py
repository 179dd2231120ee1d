"""Generation request parsing and prompt construction."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Optional

from script_builder.errors import ValidationError

SYSTEM_PROMPT = "You are a calm, thoughtful YouTube script coach."

_MODE_DIRECTIVES = {
    "preview": (
        "Write a short preview only: title options, the one-sentence premise, "
        "the quiet hook and a brief outline. Keep it under 250 words."
    ),
    "full": (
        "Write the complete deliverable: every section in full, including the "
        "full spoken script from opening hook to closing call to action."
    ),
}


class GenerationMode(str, Enum):
    PREVIEW = "preview"
    FULL = "full"


def _optional_text(payload: Dict[str, Any], key: str) -> Optional[str]:
    value = payload.get(key)
    if not isinstance(value, str):
        return None
    value = value.strip()
    return value or None


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    mode: GenerationMode = GenerationMode.PREVIEW
    tone: Optional[str] = None
    audience: Optional[str] = None
    length: Optional[str] = None
    session_id: Optional[str] = None

    @classmethod
    def from_payload(cls, payload: Any, max_prompt_chars: int) -> "GenerationRequest":
        """Validate a decoded JSON body.

        Raises ``ValidationError`` for a non-object body, a missing or empty
        prompt, an oversized prompt, or an unknown mode.
        """

        if not isinstance(payload, dict):
            raise ValidationError("Invalid JSON body.")

        raw_prompt = payload.get("prompt")
        prompt = raw_prompt.strip() if isinstance(raw_prompt, str) else ""
        if not prompt:
            raise ValidationError("Missing prompt.")
        if len(prompt) > max_prompt_chars:
            raise ValidationError(f"Prompt too long (max {max_prompt_chars} chars).")

        raw_mode = payload.get("mode")
        if raw_mode is None or raw_mode == "":
            mode = GenerationMode.PREVIEW
        elif isinstance(raw_mode, str) and raw_mode.strip().lower() in _MODE_DIRECTIVES:
            mode = GenerationMode(raw_mode.strip().lower())
        else:
            raise ValidationError("Invalid mode (expected 'preview' or 'full').")

        return cls(
            prompt=prompt,
            mode=mode,
            tone=_optional_text(payload, "tone"),
            audience=_optional_text(payload, "audience"),
            length=_optional_text(payload, "length"),
            session_id=_optional_text(payload, "session_id"),
        )


def build_messages(request: GenerationRequest) -> List[Dict[str, str]]:
    """Return chat messages for the upstream completion call."""

    parts = [request.prompt]
    constraints = [
        f"- {label}: {value}"
        for label, value in (
            ("Tone", request.tone),
            ("Audience", request.audience),
            ("Target length", request.length),
        )
        if value
    ]
    if constraints:
        parts.append("Constraints:\n" + "\n".join(constraints))
    parts.append(_MODE_DIRECTIVES[request.mode.value])

    return [
        {"role": "system", "content": SYSTEM_PROMPT},
        {"role": "user", "content": "\n\n".join(parts)},
    ]
