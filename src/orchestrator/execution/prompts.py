from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field

from orchestrator.models import Task, TaskStatus

VALIDATION_OUTPUT_LIMIT = 5000
RETRY_OUTPUT_LIMIT = 2000
PREVIOUS_TASKS_SHOWN = 5


@dataclass(slots=True)
class TaskContext:
    project_name: str
    phase_number: int
    phase_name: str
    architecture: str = ""
    tech_stack: list[str] = field(default_factory=list)
    previous_tasks: list[Task] = field(default_factory=list)
    guidelines_path: str = ""


@dataclass(slots=True)
class ProjectContext:
    """Project-wide facts every task prompt carries."""

    name: str
    architecture: str = ""
    tech_stack: list[str] = field(default_factory=list)
    guidelines_path: str = ""

    def for_phase(
        self,
        phase_number: int,
        phase_name: str,
        previous_tasks: Sequence[Task] = (),
    ) -> TaskContext:
        return TaskContext(
            project_name=self.name,
            phase_number=phase_number,
            phase_name=phase_name,
            architecture=self.architecture,
            tech_stack=list(self.tech_stack),
            previous_tasks=list(previous_tasks),
            guidelines_path=self.guidelines_path,
        )


def _numbered(items: Sequence[str]) -> str:
    return "".join(f"{index}. {item}\n" for index, item in enumerate(items, start=1))


def _project_section(context: TaskContext) -> str:
    section = f"# Project: {context.project_name}\n"
    section += f"Phase {context.phase_number}: {context.phase_name}\n"
    if context.architecture:
        section += f"\nArchitecture: {context.architecture}\n"
    if context.tech_stack:
        section += "\nTech Stack:\n"
        section += "".join(f"- {entry}\n" for entry in context.tech_stack)
    return section


def _task_section(task: Task) -> str:
    section = f"## Task {task.id}\n{task.description}\n"
    section += "\n### Acceptance Criteria\n"
    section += _numbered(task.acceptance_criteria)
    if task.depends_on:
        section += "\n### Dependencies\n"
        section += f"This task depends on: {', '.join(task.depends_on)}\n"
    return section


def _previous_tasks_section(previous: Sequence[Task]) -> str:
    completed = [task for task in previous if task.status is TaskStatus.COMPLETE]
    if not completed:
        return ""
    section = "## Previously Completed Tasks\n"
    section += "".join(
        f"- {task.id}: {task.description}\n" for task in completed[-PREVIOUS_TASKS_SHOWN:]
    )
    return section


def _instructions_section(context: TaskContext) -> str:
    steps = [
        "Implement the task described above",
        "Ensure all acceptance criteria are met",
        "Follow existing code patterns and conventions",
        "Write clean, well-documented code",
    ]
    if context.guidelines_path:
        steps.append(f"Refer to {context.guidelines_path} for project-specific guidelines")
    return (
        "## Instructions\n"
        + _numbered(steps)
        + "\n### Output Format\n"
        "When complete, provide a summary in this format:\n"
        "```\n"
        "## Task Complete\n"
        "### Files Modified\n"
        "- path/to/file1.py: description of changes\n"
        "- path/to/file2.py: description of changes\n"
        "\n"
        "### Tests\n"
        "- Describe any tests added or modified\n"
        "\n"
        "### Acceptance Criteria Status\n"
        "1. [PASS/FAIL] First criterion\n"
        "2. [PASS/FAIL] Second criterion\n"
        "```\n"
    )


def build_task_prompt(task: Task, context: TaskContext) -> str:
    sections = [_project_section(context), _task_section(task)]
    previous = _previous_tasks_section(context.previous_tasks)
    if previous:
        sections.append(previous)
    sections.append(_instructions_section(context))
    return "\n\n".join(sections)


def build_retry_prompt(
    task: Task,
    context: TaskContext,
    *,
    previous_output: str,
    failure_reason: str,
) -> str:
    retry_section = (
        "## Previous Attempt Failed\n"
        f"Reason: {failure_reason}\n\n"
        "### Previous Output (truncated)\n"
        f"```\n{previous_output[:RETRY_OUTPUT_LIMIT]}\n```\n\n"
        "### Retry Instructions\n"
        "Please fix the issues from the previous attempt.\n"
        "Focus on addressing the failure reason.\n"
    )
    return f"{build_task_prompt(task, context)}\n\n{retry_section}"


def build_validation_prompt(task: Task, execution_output: str) -> str:
    return (
        "# Task Validation\n\n"
        "## Original Task\n"
        f"{task.description}\n\n"
        "## Acceptance Criteria\n"
        + _numbered(task.acceptance_criteria)
        + "\n## Execution Output\n"
        f"```\n{execution_output[:VALIDATION_OUTPUT_LIMIT]}\n```\n\n"
        "## Instructions\n"
        "Analyze the execution output and determine:\n"
        "1. Was the task completed successfully?\n"
        "2. Were all acceptance criteria met?\n\n"
        "Respond in this format:\n"
        "```\n"
        "## Validation Result\n"
        "Status: [PASS/FAIL]\n\n"
        "### Criteria Status\n"
        "1. [PASS/FAIL] First criterion - reason\n"
        "2. [PASS/FAIL] Second criterion - reason\n\n"
        "### Summary\n"
        "Brief explanation of the validation result.\n"
        "```\n"
    )
