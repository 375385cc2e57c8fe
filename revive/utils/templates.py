"""
SMS template engine for intros, autopilot steps and follow-up drafts.
Templates use {{variable}} substitution; unknown variables render as empty strings.
Never use URL shorteners in templates.
"""
import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_VAR_PATTERN = re.compile(r"\{\{\s*(\w+)\s*\}\}")

# === AUTOPILOT TEMPLATES (used when the account has not set its own) ===
# Step 0 = opener, 1 = nudge, 2 = reslot

AUTOPILOT_TEMPLATES = {
    "opener": (
        "Hi {{name}}, {{brand}} here re your earlier inquiry. "
        "We can hold 2 options. Reply YES to book."
    ),
    "nudge": (
        "{{brand}}: still want to book a quick chat? "
        "We can hold 2 options. Reply A/B or send a time."
    ),
    "reslot": (
        "{{brand}}: no problem. Early next week or later this week? "
        "Reply with a window."
    ),
}

STEP_TEMPLATE_KEYS = ("opener", "nudge", "reslot")

# First touch for a newly added lead (services/intro.py)
INTRO_TEMPLATE = (
    "Hi {{name}}, it's {{brand}}. Thanks for reaching out! "
    "Want to grab a quick time to chat? {{booking_link}}"
)

# === FOLLOW-UP TEMPLATES (fallback when no drafter is configured) ===
# Indexed by attempt number (1-based), clamped to the last entry

FOLLOWUP_TEMPLATES = [
    "Hi {{name}}, just checking in from {{brand}}. Still interested? Happy to help when you're ready.",
    "{{brand}} here. Want me to hold a time for you this week? {{booking_link}}",
    "Hi {{name}}, no rush. If now isn't a good time, reply with a better week and we'll reach out then.",
    "Last check-in from {{brand}}. Reply anytime if you'd like to pick this back up.",
]


def render_template(template: str, **variables) -> str:
    """Substitute {{var}} placeholders and collapse the whitespace left by empty values."""
    def _replace(match: re.Match) -> str:
        value = variables.get(match.group(1))
        return "" if value is None else str(value)

    rendered = _VAR_PATTERN.sub(_replace, template)
    rendered = re.sub(r"[ \t]{2,}", " ", rendered)
    rendered = re.sub(r"\s+([,.!?])", r"\1", rendered)
    return rendered.strip()


def trim_body(body: str, max_chars: int) -> str:
    """Trim a body to max_chars on a word boundary, adding an ellipsis when cut."""
    body = body.strip()
    if len(body) <= max_chars:
        return body

    cut = body[: max_chars - 3].rstrip()
    space = cut.rfind(" ")
    if space > max_chars // 2:
        cut = cut[:space].rstrip()
    logger.warning("Message trimmed from %d to %d chars", len(body), len(cut) + 3)
    return cut + "..."


def step_template(step: int, overrides: Optional[dict] = None) -> Optional[str]:
    """
    Get the autopilot template for a step.
    Account overrides win; an override set to an empty string disables the step.
    Returns None for steps past the last template.
    """
    if step < 0 or step >= len(STEP_TEMPLATE_KEYS):
        return None
    key = STEP_TEMPLATE_KEYS[step]
    override = (overrides or {}).get(key)
    if override is not None:
        return override
    return AUTOPILOT_TEMPLATES[key]


def followup_template(attempt: int) -> str:
    idx = min(max(attempt, 1), len(FOLLOWUP_TEMPLATES)) - 1
    return FOLLOWUP_TEMPLATES[idx]
