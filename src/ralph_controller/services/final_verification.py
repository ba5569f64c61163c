"""One-shot audit prompt issued after completion is detected, and its parser."""

import logging
import re
from pathlib import Path
from typing import Dict, List, Optional

from ralph_controller.constants import (
    VERIFICATION_BLOCK_END,
    VERIFICATION_BLOCK_START,
    VERIFICATION_REQUEST_MARKER,
)
from ralph_controller.models.analysis import VerificationResult

logger = logging.getLogger(__name__)

VERIFICATION_BLOCK_PATTERN = (
    re.escape(VERIFICATION_BLOCK_START) + r"\s*(.*?)\s*" + re.escape(VERIFICATION_BLOCK_END)
)

# Section name -> prefix applied to its items in incomplete_tasks
INCOMPLETE_SECTIONS = {
    "REMAINING_TASKS": "",
    "INCOMPLETE_TASKS": "",
    "WAITING_VERIFICATION": "Awaiting verification: ",
    "CODE_QUALITY_ISSUES": "Code quality: ",
}
COMPLETED_SECTION = "COMPLETED_TASKS"

SECTION_HEADER_PATTERN = (
    r"^\s*(?P<name>"
    + "|".join(list(INCOMPLETE_SECTIONS) + [COMPLETED_SECTION])
    + r")\s*:\s*(?P<rest>.*)$"
)
SUMMARY_PATTERN = r"^\s*SUMMARY\s*:\s*(?P<summary>.+)$"
OVERALL_STATUS_PATTERN = r"^\s*OVERALL_STATUS\s*:\s*\[?\s*(?P<status>\w+)"
LIST_ITEM_PATTERN = r"^\s*(?:[-*+]|\d+[.)])\s+(?P<item>.+)$"

# Unresolved checkbox markers anywhere in the output
UNCHECKED_MARKER_PATTERN = r"\[\s*\]|\[\?\]"

# Phrases that mark a header or checkbox line as describing unfinished work
INCOMPLETE_WORK_PHRASES = [
    "remaining tasks",
    "remaining work",
    "waiting for verification",
    "awaiting verification",
    "needs verification",
    "not yet implemented",
    "not implemented",
    "not complete",
    "incomplete",
    "in progress",
    "still needed",
    "still to do",
    "to do",
    "todo",
    "pending",
    "blocked",
]
INCOMPLETE_WORK_PATTERN = r"\b(?:" + "|".join(re.escape(p) for p in INCOMPLETE_WORK_PHRASES) + r")\b"

MARKDOWN_HEADER_PATTERN = r"^\s*#{1,6}\s+(?P<header>.+?)\s*#*\s*$"
COLON_HEADER_PATTERN = r"^\s*\**(?P<header>[^:\n]{1,80}?)\**\s*:\s*\**\s*$"
CHECKBOX_LINE_PATTERN = r"^\s*[-*+]\s*\[.\]"

NONE_VALUES = {"none", "none.", "n/a", "-"}


def build_verification_prompt(plan_path: Optional[str] = None) -> str:
    """Render the audit prompt, embedding the plan file when it can be read."""
    plan_section = ""
    if plan_path:
        path = Path(plan_path)
        if path.is_file():
            try:
                plan_section = f"\n## Implementation Plan to Verify:\n{path.read_text(encoding='utf-8')}\n"
            except (OSError, UnicodeDecodeError) as e:
                logger.warning(f"Could not read plan file {plan_path}: {e}")

    return f"""
{VERIFICATION_REQUEST_MARKER}

You indicated that the task is complete. Before we finish, perform a STRICT final verification:

1. Review EVERY item in the implementation plan or task list, not just the high priority ones.
2. For EACH item, confirm it is FULLY implemented:
   - the code exists and is correct
   - tests pass (where applicable)
   - the feature works as expected
   If you have not actually verified it, it is NOT complete.

3. Task status definitions:
   - [x] COMPLETE: code written, tested and verified working
   - [?] NOT COMPLETE: awaiting verification, which YOU need to do now
   - [ ] NOT COMPLETE: not started or not finished

4. Report your findings in this EXACT format:

{VERIFICATION_BLOCK_START}
REMAINING_TASKS:
- <task>: <what's missing>
WAITING_VERIFICATION:
- <task>
CODE_QUALITY_ISSUES:
- <issue>
SUMMARY: <one line summary of the verification>
{VERIFICATION_BLOCK_END}

Write the literal None under a section that has no entries.

RULES:
- Every task not marked [x] in the plan belongs under REMAINING_TASKS or WAITING_VERIFICATION.
- Do not skip tasks because they are "low priority" or "can be done later".
- If you find incomplete tasks, keep working on them instead of reporting completion.
{plan_section}"""


def _is_none(text: str) -> bool:
    return text.strip().strip("*_`").lower() in NONE_VALUES


def _parse_sections(block: str) -> Dict[str, List[str]]:
    sections: Dict[str, List[str]] = {}
    current: Optional[str] = None

    for line in block.split("\n"):
        header = re.match(SECTION_HEADER_PATTERN, line, re.IGNORECASE)
        if header:
            current = header.group("name").upper()
            sections.setdefault(current, [])
            rest = header.group("rest").strip()
            if rest and not _is_none(rest):
                sections[current].append(rest)
            continue

        if re.match(SUMMARY_PATTERN, line, re.IGNORECASE) or re.match(
            OVERALL_STATUS_PATTERN, line, re.IGNORECASE
        ):
            current = None
            continue

        if current is None or not line.strip() or _is_none(line):
            continue

        item = re.match(LIST_ITEM_PATTERN, line)
        text = item.group("item").strip() if item else line.strip()
        if not _is_none(text):
            sections[current].append(text)

    return sections


def _find_incomplete_sections(output: str) -> List[str]:
    """Headers naming unfinished work that are followed by a real list item."""
    findings = []
    lines = output.split("\n")
    for i, line in enumerate(lines):
        m = re.match(MARKDOWN_HEADER_PATTERN, line) or re.match(COLON_HEADER_PATTERN, line)
        if not m:
            continue
        header = m.group("header").strip()
        if not re.search(INCOMPLETE_WORK_PATTERN, header, re.IGNORECASE):
            continue

        for following in lines[i + 1 :]:
            if not following.strip():
                continue
            item = re.match(LIST_ITEM_PATTERN, following)
            if item and not _is_none(item.group("item")):
                findings.append(f"Found incomplete section: '{header}'")
            break
    return findings


def _find_incomplete_checkboxes(output: str) -> List[str]:
    findings = []
    for line in output.split("\n"):
        if not re.match(CHECKBOX_LINE_PATTERN, line):
            continue
        if re.search(INCOMPLETE_WORK_PATTERN, line, re.IGNORECASE):
            findings.append(f"Incomplete work item: {line.strip()}")
    return findings


def parse_verification_result(output: str) -> Optional[VerificationResult]:
    """Parse the agent's verification block.

    Returns None when no block is present; callers treat that as "keep
    working". Any unresolved checkbox, incomplete-work section or
    incomplete checkbox line anywhere in the output forces
    ``all_tasks_complete`` to False even if the block itself lists nothing.
    """
    match = re.search(VERIFICATION_BLOCK_PATTERN, output, re.IGNORECASE | re.DOTALL)
    if not match:
        logger.info("No verification result block found in output")
        return None

    block = match.group(1)
    sections = _parse_sections(block)

    incomplete: List[str] = []
    for name, prefix in INCOMPLETE_SECTIONS.items():
        incomplete.extend(f"{prefix}{item}" for item in sections.get(name, []))

    summary_match = re.search(SUMMARY_PATTERN, block, re.IGNORECASE | re.MULTILINE)
    status_match = re.search(OVERALL_STATUS_PATTERN, block, re.IGNORECASE | re.MULTILINE)

    all_complete = not incomplete
    if status_match and status_match.group("status").upper() != "COMPLETE":
        all_complete = False

    overrides: List[str] = []
    unchecked = len(re.findall(UNCHECKED_MARKER_PATTERN, output))
    if unchecked:
        overrides.append(f"Found {unchecked} unchecked task marker(s) in output")
    overrides.extend(_find_incomplete_sections(output))
    overrides.extend(_find_incomplete_checkboxes(output))

    for entry in overrides:
        all_complete = False
        if entry not in incomplete:
            incomplete.append(entry)

    if not all_complete and not incomplete:
        incomplete.append("Verification indicated incomplete status")

    result = VerificationResult(
        all_tasks_complete=all_complete,
        completed_tasks=sections.get(COMPLETED_SECTION, []),
        incomplete_tasks=incomplete,
        summary=summary_match.group("summary").strip() if summary_match else None,
    )
    logger.info(
        f"Verification parsed: complete={result.all_tasks_complete}, "
        f"incomplete={len(result.incomplete_tasks)}"
    )
    return result
