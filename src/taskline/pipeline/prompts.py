"""Role-keyed prompt templates for pipeline steps."""

from __future__ import annotations

import re

from taskline.pipeline.models import Role, WorkItem

REVIEW_OUTPUT_TAG = "review_output"
WORK_ITEM_TAG = "work_item"
FAILURE_OUTPUT_TAG = "verification_output"
FEEDBACK_TAG = "review_feedback"
CONFLICT_FILES_TAG = "conflicted_files"
ITEMS_TAG = "work_items"

STEP_PROMPTS: dict[Role, str] = {
    Role.IMPLEMENT: "Implement work item #{number}",
    Role.REVIEW: "Review the changes for work item #{number}. Run: git diff {trunk}",
    Role.VERIFY: "Review the changes for work item #{number}. Run: git diff {trunk}",
    Role.SECURITY: "Security review changes for work item #{number}. Run: git diff {trunk}",
    Role.DOCUMENT: "Add documentation for changes in work item #{number}",
    Role.AUDIT: (
        "Audit the changed files for work item #{number}. Run: git diff {trunk} --name-only"
    ),
    Role.MERGE: "Create a PR, merge it, and close work item #{number}",
    Role.CREATE_PR: "Create a PR for work item #{number}. Do not merge it",
}
_FIX_PROMPT = "Fix these review findings for work item #{number}:"
_GENERIC_PROMPT = "Run {role} for work item #{number}"


def wrap_untrusted(tag: str, text: str) -> str:
    """Embed externally sourced text between ``<tag>`` delimiters.

    Any closing tag inside ``text`` is defanged so the payload cannot end the
    block early and smuggle instructions after it.
    """

    closing = re.compile(rf"</\s*{re.escape(tag)}\s*>", re.IGNORECASE)
    safe = closing.sub(f"</{tag}_>", text)
    return f"<{tag}>\n{safe}\n</{tag}>"


def build_step_prompt(
    role: str,
    number: int,
    *,
    findings: str | None = None,
    trunk: str = "main",
    item: WorkItem | None = None,
) -> str:
    known = Role.lookup(role)
    if known in (Role.FIX, Role.SECURITY_FIX):
        prompt = _FIX_PROMPT.format(number=number)
        return f"{prompt}\n\n{wrap_untrusted(REVIEW_OUTPUT_TAG, findings or '')}"
    if known is None:
        return _GENERIC_PROMPT.format(role=role, number=number)

    prompt = STEP_PROMPTS[known].format(number=number, trunk=trunk)
    if known is Role.IMPLEMENT and item is not None and (item.title or item.body):
        details = f"{item.title}\n\n{item.body}".strip()
        prompt = f"{prompt}\n\n{wrap_untrusted(WORK_ITEM_TAG, details)}"
    return prompt


def verification_fix_prompt(output: str) -> str:
    return f"Fix these test/lint failures:\n\n{wrap_untrusted(FAILURE_OUTPUT_TAG, output)}"
