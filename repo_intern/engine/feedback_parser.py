"""Strict parsing of agent review output into ``ReviewFeedback``.

The parser never raises: it returns a ``FeedbackParseResult`` holding either
validated feedback or an error description. Transport (how the text was
obtained) is not its concern.
"""

import json
import re
from dataclasses import dataclass

from pydantic import ValidationError

from repo_intern.models.review import ReviewFeedback

_JSON_FENCE = re.compile(r"```json\s*(.*?)\s*```", re.DOTALL | re.IGNORECASE)


@dataclass(frozen=True)
class FeedbackParseResult:
    """Either ``feedback`` or ``error`` is set, never both."""

    feedback: ReviewFeedback | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.feedback is not None


def _first_balanced_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span, honoring JSON string escapes."""
    start = text.find("{")
    while start != -1:
        depth = 0
        in_string = False
        escaped = False
        for index in range(start, len(text)):
            char = text[index]
            if in_string:
                if escaped:
                    escaped = False
                elif char == "\\":
                    escaped = True
                elif char == '"':
                    in_string = False
            elif char == '"':
                in_string = True
            elif char == "{":
                depth += 1
            elif char == "}":
                depth -= 1
                if depth == 0:
                    return text[start : index + 1]
        start = text.find("{", start + 1)
    return None


def extract_json_candidate(text: str) -> str | None:
    """Locate the JSON payload: first fenced json block, else first balanced object."""
    match = _JSON_FENCE.search(text)
    if match:
        return match.group(1)
    return _first_balanced_object(text)


def parse_review_feedback(text: str) -> FeedbackParseResult:
    """Parse and validate agent output.

    Example:
        >>> result = parse_review_feedback(agent_output)
        >>> if result.ok:
        ...     print(result.feedback.summary)
        ... else:
        ...     print(result.error)
    """
    if not text or not text.strip():
        return FeedbackParseResult(error="Agent output is empty")

    candidate = extract_json_candidate(text)
    if candidate is None:
        return FeedbackParseResult(error="No JSON found in agent output")

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        return FeedbackParseResult(error=f"Invalid JSON in agent output: {e}")

    if not isinstance(data, dict):
        return FeedbackParseResult(error="Review feedback must be a JSON object")

    try:
        feedback = ReviewFeedback.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or '<root>'}: {err['msg']}" for err in e.errors()
        )
        return FeedbackParseResult(error=f"Invalid feedback structure: {problems}")

    return FeedbackParseResult(feedback=feedback)
