"""
Render prompt assembly from a JobSpec.

Each known dimension contributes one phrase; unknown dimensions are appended
as "name: value" so nothing the user picked is silently dropped.
"""

from ..models import JobSpec

DIMENSION_PHRASES = {
    "hookStyle": "Open with a {} hook",
    "pacing": "{} pacing",
    "transition": "{} transitions between shots",
    "voiceLanguage": "voiceover language {}",
    "voiceTone": "{} voice tone",
}

# Dimensions consumed by the backend request itself, not by the prompt
REQUEST_DIMENSIONS = {"aspectRatio", "engineTier", "engine", "duration"}


def build_prompt(spec: JobSpec) -> str:
    parts = [f"Short product advertisement for {spec.source_ref or 'the product'}"]
    for name, value in spec.dimensions.items():
        if name in REQUEST_DIMENSIONS:
            continue
        template = DIMENSION_PHRASES.get(name)
        parts.append(template.format(value) if template else f"{name}: {value}")
    return ". ".join(parts) + "."
