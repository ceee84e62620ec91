from __future__ import annotations

import re
from dataclasses import dataclass

from orchestrator.errors import OrchestratorError, TaskExecutionError, ValidationError
from orchestrator.models import CriterionResult, KeyDecision, Task, ValidationOutcome

COMPLETE_MARKER = "## Task Complete"
RAW_OUTPUT_LIMIT = 10_000

_CRITERIA_PATTERN = re.compile(
    r"(\d+)\.\s*\[(PASS|FAIL)\]\s*([^-\n]+)(?:-\s*(.+))?", re.IGNORECASE
)
_CHECK_PATTERN = re.compile(r"([✓✗])\s*(.+)")
_STATUS_PATTERN = re.compile(r"Status:\s*\[?(PASS|FAIL)\]?", re.IGNORECASE)
_LOOSE_PATH_PATTERN = re.compile(
    r"(?:created|modified|updated|added)\s+[`']?([a-zA-Z0-9_./-]+\.[a-zA-Z]+)[`']?",
    re.IGNORECASE,
)
_COMPLETED_PATTERN = re.compile(
    r"(?:Task|Implementation)\s+(?:is\s+)?(?:complete|completed|done)[.!]?\s*([^\n]+)?",
    re.IGNORECASE,
)
_PASSING_PATTERN = re.compile(r"(\d+)\s+(?:tests?\s+)?pass(?:ed|ing)?", re.IGNORECASE)
_FAILING_PATTERN = re.compile(r"(\d+)\s+(?:tests?\s+)?fail(?:ed|ing|ures?)?", re.IGNORECASE)
_ADDED_PATTERN = re.compile(
    r"(?:(\d+)\s+(?:new\s+)?tests?\s+added|added\s+(\d+)\s+(?:new\s+)?tests?)", re.IGNORECASE
)


@dataclass(frozen=True, slots=True)
class FileChange:
    path: str
    description: str = ""


@dataclass(frozen=True, slots=True)
class ReportedCriterion:
    index: int
    passed: bool
    description: str
    reason: str | None = None


@dataclass(frozen=True, slots=True)
class ParsedTaskOutput:
    completed: bool
    files_created: tuple[FileChange, ...]
    files_modified: tuple[FileChange, ...]
    files_deleted: tuple[FileChange, ...]
    criteria: tuple[ReportedCriterion, ...]
    key_decisions: tuple[KeyDecision, ...]
    assumptions: tuple[str, ...]
    tests_info: str | None
    tests_added: int
    tests_passing: int
    tests_failing: int
    summary: str
    raw: str


def _section(output: str, *titles: str) -> str | None:
    for title in titles:
        match = re.search(
            rf"^#+\s*{re.escape(title)}[:\s]*\n(.*?)(?=^#|^```|\Z)",
            output,
            re.IGNORECASE | re.MULTILINE | re.DOTALL,
        )
        if match and match.group(1).strip():
            return match.group(1).strip()
    return None


def _bullets(section: str | None) -> list[str]:
    if not section:
        return []
    items: list[str] = []
    for line in section.splitlines():
        stripped = line.strip()
        if stripped[:1] in {"-", "*"}:
            items.append(stripped[1:].strip())
    return [item for item in items if item]


def _file_changes(section: str | None) -> list[FileChange]:
    changes: list[FileChange] = []
    for item in _bullets(section):
        path, _, description = item.partition(":")
        path = path.strip().strip("`")
        if path:
            changes.append(FileChange(path=path, description=description.strip()))
    return changes


def extract_criteria(output: str) -> list[ReportedCriterion]:
    criteria: list[ReportedCriterion] = []
    for match in _CRITERIA_PATTERN.finditer(output):
        reason = match.group(4)
        criteria.append(
            ReportedCriterion(
                index=int(match.group(1)),
                passed=match.group(2).upper() == "PASS",
                description=match.group(3).strip(),
                reason=reason.strip() if reason else None,
            )
        )

    # Check-mark lines continue the numbering of any numbered entries.
    check_index = max((item.index for item in criteria), default=0) + 1
    for match in _CHECK_PATTERN.finditer(output):
        description = match.group(2).strip()
        if any(description in item.description for item in criteria):
            continue
        criteria.append(
            ReportedCriterion(
                index=check_index, passed=match.group(1) == "✓", description=description
            )
        )
        check_index += 1
    return criteria


def _first_int(pattern: re.Pattern[str], text: str) -> int:
    match = pattern.search(text)
    if not match:
        return 0
    for group in match.groups():
        if group:
            return int(group)
    return 0


def extract_summary(output: str) -> str:
    section = _section(output, "Summary")
    if section:
        return section
    completed = _COMPLETED_PATTERN.search(output)
    if completed:
        return completed.group(0).strip()
    paragraphs = [part.strip() for part in re.split(r"\n\n+", output) if part.strip()]
    if paragraphs and len(paragraphs[-1]) < 500:
        return paragraphs[-1]
    return ""


def parse_task_output(output: str) -> ParsedTaskOutput:
    """Extract the structured report an agent prints after a task."""
    modified = _file_changes(_section(output, "Files Modified", "Modified Files"))
    created = _file_changes(_section(output, "Files Created", "Created Files"))
    deleted = _file_changes(_section(output, "Files Deleted", "Deleted Files"))
    known = {change.path for change in (*modified, *created, *deleted)}
    for match in _LOOSE_PATH_PATTERN.finditer(output):
        path = match.group(1)
        if path not in known:
            known.add(path)
            modified.append(FileChange(path=path))

    decisions: list[KeyDecision] = []
    for item in _bullets(_section(output, "Key Decisions", "Decisions")):
        decision, _, rationale = item.partition(":")
        decisions.append(KeyDecision(decision=decision.strip(), rationale=rationale.strip()))

    tests_info = _section(output, "Tests")
    tests_text = tests_info or output
    tests_passing = _first_int(_PASSING_PATTERN, tests_text)
    if tests_info is None and tests_passing:
        tests_info = f"{tests_passing} tests passing"

    return ParsedTaskOutput(
        completed=COMPLETE_MARKER in output,
        files_created=tuple(created),
        files_modified=tuple(modified),
        files_deleted=tuple(deleted),
        criteria=tuple(extract_criteria(output)),
        key_decisions=tuple(decisions),
        assumptions=tuple(_bullets(_section(output, "Assumptions"))),
        tests_info=tests_info,
        tests_added=_first_int(_ADDED_PATTERN, tests_text),
        tests_passing=tests_passing,
        tests_failing=_first_int(_FAILING_PATTERN, tests_text),
        summary=extract_summary(output),
        raw=output,
    )


def criteria_results(task: Task, parsed: ParsedTaskOutput) -> tuple[CriterionResult, ...]:
    """Line the agent's reported statuses up with the task's own criteria."""
    reported: dict[int, ReportedCriterion] = {}
    for item in parsed.criteria:
        reported.setdefault(item.index, item)
    results: list[CriterionResult] = []
    for index, criterion in enumerate(task.acceptance_criteria, start=1):
        item = reported.get(index)
        results.append(
            CriterionResult(
                index=index,
                criterion=criterion,
                met=bool(item and item.passed),
                notes=(item.reason if item else "not reported"),
            )
        )
    return tuple(results)


def check_task_output(task: Task, parsed: ParsedTaskOutput) -> OrchestratorError | None:
    """Return the error describing why ``parsed`` does not complete ``task``."""
    if not parsed.completed:
        return TaskExecutionError.parse_error(task.id, f"missing '{COMPLETE_MARKER}' marker")
    expected = len(task.acceptance_criteria)
    if expected and not parsed.criteria:
        return TaskExecutionError.parse_error(task.id, "no acceptance criteria status reported")
    unmet = [
        f"{item.index}. {item.criterion}"
        for item in criteria_results(task, parsed)
        if not item.met
    ]
    # Criteria the agent added on its own still count when it reports them failed.
    unmet.extend(
        f"{item.index}. {item.description}"
        for item in parsed.criteria
        if item.index > expected and not item.passed
    )
    if unmet:
        return ValidationError.criteria_not_met(task.id, unmet)
    return None


def parse_validation_output(output: str) -> ValidationOutcome:
    criteria = extract_criteria(output)
    status = _STATUS_PATTERN.search(output)
    if status:
        passed = status.group(1).upper() == "PASS"
    else:
        passed = bool(criteria) and all(item.passed for item in criteria)
    return ValidationOutcome(
        passed=passed,
        validator_output=output[:RAW_OUTPUT_LIMIT],
        criteria_checked=len(criteria),
        criteria_passed=sum(1 for item in criteria if item.passed),
        summary=_section(output, "Summary") or "",
    )
