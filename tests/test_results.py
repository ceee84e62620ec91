from orchestrator.execution.results import (
    check_task_output,
    criteria_results,
    extract_criteria,
    extract_summary,
    parse_task_output,
    parse_validation_output,
)
from orchestrator.models import Task

REPORT = """Working on it...

## Task Complete
### Files Created
- src/app/handlers.py: request handlers

### Files Modified
- src/app/main.py: registered the handlers
- `README.md`: usage notes

### Key Decisions
- Use a registry: keeps routing declarative

### Assumptions
- Python 3.11 is available

### Tests
- Added 3 tests, 12 passing, 1 failing

### Acceptance Criteria Status
1. [PASS] Handlers are registered - verified by tests
2. [FAIL] Docs mention the new endpoint - README not updated

### Summary
Added request handlers and wired them into the app.
"""


def _task(*criteria: str) -> Task:
    return Task(id="1.1", description="Add handlers", acceptance_criteria=list(criteria))


def test_parse_task_output_extracts_report_sections() -> None:
    parsed = parse_task_output(REPORT)

    assert parsed.completed is True
    assert [change.path for change in parsed.files_created] == ["src/app/handlers.py"]
    assert [change.path for change in parsed.files_modified] == ["src/app/main.py", "README.md"]
    assert parsed.files_modified[0].description == "registered the handlers"
    assert parsed.key_decisions[0].decision == "Use a registry"
    assert parsed.key_decisions[0].rationale == "keeps routing declarative"
    assert parsed.assumptions == ("Python 3.11 is available",)
    assert parsed.tests_added == 3
    assert parsed.tests_passing == 12
    assert parsed.tests_failing == 1
    assert parsed.summary == "Added request handlers and wired them into the app."


def test_extract_criteria_reads_numbered_and_check_marks() -> None:
    criteria = extract_criteria(REPORT)

    assert [(item.index, item.passed) for item in criteria] == [(1, True), (2, False)]
    assert criteria[0].description == "Handlers are registered"
    assert criteria[0].reason == "verified by tests"

    checks = extract_criteria("✓ Endpoint responds\n✗ Latency under 50ms\n")
    assert [(item.index, item.passed, item.description) for item in checks] == [
        (1, True, "Endpoint responds"),
        (2, False, "Latency under 50ms"),
    ]


def test_loose_file_mentions_count_as_modified() -> None:
    parsed = parse_task_output("## Task Complete\nI updated `src/config.py` to add a flag.")

    assert [change.path for change in parsed.files_modified] == ["src/config.py"]


def test_extract_summary_falls_back_to_completion_sentence() -> None:
    assert extract_summary("Some log\nTask completed. All handlers wired.") == (
        "Task completed. All handlers wired."
    )
    assert extract_summary("first paragraph\n\nshort closing note") == "short closing note"


def test_check_task_output_requires_completion_marker() -> None:
    error = check_task_output(_task(), parse_task_output("I could not finish."))

    assert error is not None
    assert error.kind == "parse_error"


def test_check_task_output_requires_reported_criteria() -> None:
    parsed = parse_task_output("## Task Complete\nDone.")

    assert check_task_output(_task(), parsed) is None

    error = check_task_output(_task("Handlers are registered"), parsed)
    assert error is not None
    assert error.kind == "parse_error"


def test_check_task_output_flags_unmet_criteria() -> None:
    task = _task("Handlers are registered", "Docs mention the new endpoint")

    error = check_task_output(task, parse_task_output(REPORT))

    assert error is not None
    assert error.kind == "criteria_not_met"
    assert error.context["failed_criteria"] == ["2. Docs mention the new endpoint"]


def test_criteria_results_marks_unreported_criteria() -> None:
    task = _task("Handlers are registered", "Docs mention the new endpoint", "Changelog entry")

    results = criteria_results(task, parse_task_output(REPORT))

    assert [(item.index, item.met) for item in results] == [(1, True), (2, False), (3, False)]
    assert results[2].notes == "not reported"
    assert results[0].criterion == "Handlers are registered"


def test_parse_validation_output_prefers_status_line() -> None:
    outcome = parse_validation_output(
        "## Validation Result\nStatus: FAIL\n\n### Criteria Status\n"
        "1. [PASS] Handlers are registered - ok\n\n### Summary\nDocs are missing.\n"
    )

    assert outcome.passed is False
    assert outcome.criteria_checked == 1
    assert outcome.criteria_passed == 1
    assert outcome.summary == "Docs are missing."


def test_parse_validation_output_without_status_uses_criteria() -> None:
    assert parse_validation_output("1. [PASS] One\n2. [PASS] Two\n").passed is True
    assert parse_validation_output("1. [PASS] One\n2. [FAIL] Two\n").passed is False
    assert parse_validation_output("looks fine to me").passed is False


def test_check_marks_continue_numbered_criteria() -> None:
    output = (
        "## Task Complete\n"
        "1. [PASS] Handlers are registered\n"
        "✗ Docs mention the new endpoint\n"
    )

    criteria = extract_criteria(output)
    results = criteria_results(_task("Handlers are registered"), parse_task_output(output))

    assert [(item.index, item.passed) for item in criteria] == [(1, True), (2, False)]
    assert [(item.index, item.met) for item in results] == [(1, True)]


def test_extra_failed_criterion_fails_the_task() -> None:
    output = (
        "## Task Complete\n"
        "1. [PASS] Handlers are registered\n"
        "2. [FAIL] Load test passes - p99 too high\n"
    )

    error = check_task_output(_task("Handlers are registered"), parse_task_output(output))

    assert error is not None
    assert error.kind == "criteria_not_met"
    assert error.context["failed_criteria"] == ["2. Load test passes"]

    assert check_task_output(_task(), parse_task_output(output)) is not None
