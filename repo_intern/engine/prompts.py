"""Prompt builders and agent-output heuristics.

Every prompt the engine sends to the agent is built here so the wording lives
in one place. Builders are pure functions of their inputs.
"""

import re
from collections.abc import Sequence

from repo_intern.enums import GitOperation
from repo_intern.models.domain import WorkTask
from repo_intern.models.review import REVIEW_CATEGORIES, ReviewFeedbackItem

# Error text quoted back to the agent is truncated to the tail, where hooks
# print their summaries.
MAX_QUOTED_ERROR = 4000


def _tail(text: str, limit: int = MAX_QUOTED_ERROR) -> str:
    text = text.strip()
    if len(text) <= limit:
        return text
    return "...(truncated)...\n" + text[-limit:]


def build_task_prompt(task: WorkTask) -> str:
    """Wrap the task instructions with the engine's ground rules."""
    return f"""# Task {task.key}: {task.summary}

{task.prompt.strip()}

## Ground rules
- Implement the change directly in this repository; do not only describe a plan.
- Keep changes focused on the task.
- Do NOT commit or push; the automation commits your work when you finish.
"""


def build_hook_fix_prompt(operation: GitOperation, error_output: str, hook_log: str | None = None) -> str:
    """Ask the agent to fix whatever made a quality gate reject a commit or push."""
    git_command = "git commit" if operation == GitOperation.COMMIT else "git push origin HEAD"
    log_hint = ""
    if hook_log:
        log_hint = f"""
Previous hook failures for this task are logged in `{hook_log}`
(`tail -n 100 {hook_log}` shows recent patterns).
"""

    if operation == GitOperation.COMMIT:
        finish = "5. **Retry the commit** to verify it succeeds."
    else:
        finish = (
            "5. **Amend the existing commit** with your fixes:\n"
            "   ```bash\n   git commit --amend --no-edit\n   ```\n"
            "6. **Verify the fix** by running the push command again."
        )

    return f"""# Git Hook Error - Fix Required

The git {operation.value} operation failed, most likely because pre-{operation.value} hooks
rejected the change.
{log_hint}
## Failure output
```
{_tail(error_output)}
```

## Your Task
1. Run `{git_command}` to reproduce the failure.
2. Fix every reported issue (lint, formatting, type errors, failing tests).
3. Do not modify unrelated code.
4. Stage your changes with `git add .`
{finish}
"""


def build_review_prompt(diff: str, iteration: int, context: str = "") -> str:
    """Request structured review feedback on ``diff``."""
    categories = "|".join(REVIEW_CATEGORIES)
    context_block = f"\n## Context\n{context.strip()}\n" if context.strip() else ""
    return f"""You are reviewing a change-set. Analyze the diff and respond with structured JSON feedback.
{context_block}
## Review Iteration
{iteration}

## Review Criteria
1. Code quality and maintainability
2. Potential bugs, edge cases and error handling
3. Performance
4. Security
5. Test coverage
6. Documentation

## Diff
```diff
{diff}
```

## Priorities
- critical: security vulnerabilities, data loss, breaking changes
- high: bugs likely to cause failures, major performance issues
- medium: code quality issues, minor bugs, missing tests
- low: style inconsistencies, minor optimizations
- info: suggestions and alternatives

## Response format
```json
{{
  "summary": "Overall assessment in 2-3 sentences",
  "items": [
    {{
      "priority": "critical|high|medium|low|info",
      "category": "{categories}",
      "file": "path/to/file",
      "line": "42",
      "issue": "What is wrong",
      "suggestion": "Specific actionable fix"
    }}
  ],
  "approved": false
}}
```

Set "approved" to true ONLY if every issue is low priority or informational.
Respond with the JSON block only.
"""


def build_fix_prompt(items: Sequence[ReviewFeedbackItem], iteration: int) -> str:
    """Ask the agent to address exactly ``items``."""
    entries = []
    for index, item in enumerate(items, start=1):
        where = f" in `{item.file}`" if item.file else ""
        line = f" (line {item.line})" if item.line else ""
        entries.append(
            f"{index}. **[{item.priority.value.upper()}] {item.category}**{where}{line}\n"
            f"   - Issue: {item.issue}\n"
            f"   - Suggestion: {item.suggestion}"
        )
    listing = "\n\n".join(entries)
    return f"""You received the following review feedback. Address each item.

## Review Iteration {iteration}

## Feedback to Address
{listing}

## Instructions
1. Work in priority order (critical, then high, then medium).
2. Make minimal, focused changes; do not make unrelated edits.
3. Do NOT commit or push; the automation commits your work.
"""


def build_review_response_prompt(
    pr_number: int | None,
    reviewer: str,
    review_body: str,
    comments: Sequence[dict[str, str | int | None]] = (),
) -> str:
    """Turn a human "changes requested" review into agent instructions."""
    header = f"Pull request #{pr_number}" if pr_number is not None else "This branch"
    lines = [
        f"# Review feedback from {reviewer}",
        "",
        f"{header} received a review requesting changes. Address all of the feedback below.",
        "",
        "## Review",
        review_body.strip() or "(no summary provided)",
    ]
    if comments:
        lines += ["", "## Inline comments"]
        for index, comment in enumerate(comments, start=1):
            location = comment.get("path") or "general"
            if comment.get("line"):
                location = f"{location}:{comment['line']}"
            lines.append(f"{index}. `{location}`: {str(comment.get('body', '')).strip()}")
    lines += [
        "",
        "## Instructions",
        "- Make the requested changes directly in this repository.",
        "- Do NOT commit or push; the automation commits your work.",
    ]
    return "\n".join(lines) + "\n"


_PLAN_PATTERNS = [
    re.compile(r"I'?ve created (a|an|the) (comprehensive )?(implementation )?plan", re.IGNORECASE),
    re.compile(r"created a plan for", re.IGNORECASE),
    re.compile(r"plan has been created", re.IGNORECASE),
    re.compile(r"implementation plan is (now )?ready", re.IGNORECASE),
    re.compile(r"the plan is (now )?ready", re.IGNORECASE),
    re.compile(r"plan is ready for (your )?review", re.IGNORECASE),
    re.compile(r"drafted a plan", re.IGNORECASE),
    re.compile(r"wrote out a plan", re.IGNORECASE),
    re.compile(r"plan (file )?(is )?(available|saved)", re.IGNORECASE),
    re.compile(r"##.*plan.*summary", re.IGNORECASE),
]
_PLAN_WORD = re.compile(r"\bplan\b", re.IGNORECASE)
_PLAN_CONTEXT = re.compile(
    r"summary|review|ready|created|implementation|approach|steps|changes (required|needed)", re.IGNORECASE
)
_PLAN_PATH = re.compile(r"(?:available at|saved to:?)\s*[`\"]?((?:/|~/)[^\s`\"]+\.md)[`\"]?", re.IGNORECASE)


def detect_plan_only(output: str) -> tuple[bool, str | None]:
    """Guess whether the agent wrote a plan instead of implementing.

    Only meaningful when the agent produced no changes.

    Returns:
        (detected, plan_path) where plan_path is the plan file when mentioned
    """
    detected = any(pattern.search(output) for pattern in _PLAN_PATTERNS)
    if not detected:
        detected = bool(_PLAN_WORD.search(output) and _PLAN_CONTEXT.search(output))
    if not detected:
        return False, None
    match = _PLAN_PATH.search(output)
    return True, match.group(1) if match else None


def build_plan_implementation_prompt(task: WorkTask, plan_path: str | None) -> str:
    """Re-run prompt used once when the agent stopped after planning."""
    if plan_path:
        intro = (
            f"You previously created an implementation plan at: {plan_path}\n\n"
            "Read it and implement it NOW. Do not create another plan."
        )
    else:
        intro = (
            "You previously created an implementation plan but did not implement it.\n\n"
            "Implement the task NOW. Do not only describe what needs to be done."
        )
    return f"""{intro}

You MUST create or modify files. Do not exit until real code changes exist.

For reference, the original task:
---
{build_task_prompt(task)}
---
"""
