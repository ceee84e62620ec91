from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

from orchestrator.adapters.base import AgentAdapter, AgentAdapterError, AgentExecutionResult
from orchestrator.errors import OrchestratorError, TaskExecutionError, ValidationError
from orchestrator.execution.prompts import (
    TaskContext,
    build_retry_prompt,
    build_task_prompt,
    build_validation_prompt,
)
from orchestrator.execution.results import (
    RAW_OUTPUT_LIMIT,
    check_task_output,
    criteria_results,
    parse_task_output,
    parse_validation_output,
)
from orchestrator.models import (
    FailureKind,
    Task,
    TaskEventType,
    TaskExecutionEvent,
    TaskResult,
    TaskStatus,
    ValidationOutcome,
    utcnow_iso,
)

logger = logging.getLogger(__name__)

TaskEventHook = Callable[[TaskExecutionEvent], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 2
    backoff_seconds: float = 2.0
    timeout_seconds: float = 600.0

    def delay_for(self, retry_number: int) -> float:
        return self.backoff_seconds * (2 ** (retry_number - 1))


class TaskExecutor:
    """Drives one task at a time through the coding agent.

    Failures never escape as exceptions: every attempt settles as a
    ``TaskResult`` whose ``failure_kind`` says what went wrong.
    """

    def __init__(
        self,
        adapter: AgentAdapter,
        context: TaskContext,
        *,
        retry_policy: RetryPolicy | None = None,
        validate_results: bool = True,
        event_hook: TaskEventHook | None = None,
    ) -> None:
        self.adapter = adapter
        self.context = context
        self.retry_policy = retry_policy or RetryPolicy()
        self.validate_results = validate_results
        self.event_hook = event_hook
        self._running = False
        self._aborted = False

    def _emit(
        self,
        event_type: TaskEventType,
        task_id: str,
        *,
        attempt: int = 1,
        message: str = "",
        result: TaskResult | None = None,
    ) -> None:
        if self.event_hook is not None:
            self.event_hook(
                TaskExecutionEvent(
                    type=event_type,
                    task_id=task_id,
                    attempt=attempt,
                    message=message,
                    result=result,
                )
            )

    def is_running(self) -> bool:
        return self._running

    @property
    def aborted(self) -> bool:
        return self._aborted

    def abort(self) -> None:
        self._aborted = True
        if self.adapter.is_running():
            self.adapter.abort()

    async def _run_agent(
        self, prompt: str, on_chunk: Callable[[str], None] | None
    ) -> AgentExecutionResult:
        return await asyncio.wait_for(
            self.adapter.execute_stream(prompt, on_chunk),
            timeout=self.retry_policy.timeout_seconds,
        )

    async def _run_validation(
        self, task: Task, output: str
    ) -> tuple[ValidationOutcome, AgentExecutionResult | None]:
        try:
            agent_result = await self._run_agent(build_validation_prompt(task, output), None)
        except TimeoutError:
            self.adapter.abort()
            details = f"validator timed out after {self.retry_policy.timeout_seconds:.1f}s"
            return ValidationOutcome(passed=False, validator_output="", summary=details), None
        except AgentAdapterError as exc:
            return ValidationOutcome(passed=False, validator_output="", summary=str(exc)), None
        except Exception as exc:
            logger.exception("Adapter raised while validating task %s", task.id)
            summary = f"validator crashed: {type(exc).__name__}: {exc}"
            return ValidationOutcome(passed=False, validator_output="", summary=summary), None
        if not agent_result.success:
            summary = agent_result.error or f"validator exited with code {agent_result.exit_code}"
            outcome = ValidationOutcome(
                passed=False,
                validator_output=agent_result.output[:RAW_OUTPUT_LIMIT],
                summary=summary,
            )
            return outcome, agent_result
        return parse_validation_output(agent_result.output), agent_result

    async def validate(self, task: Task, raw_output: str) -> ValidationOutcome:
        outcome, _ = await self._run_validation(task, raw_output)
        return outcome

    async def execute(
        self,
        task: Task,
        *,
        prompt: str | None = None,
        attempt: int = 1,
    ) -> TaskResult:
        started_at = utcnow_iso()
        started = time.monotonic()
        self._emit(TaskEventType.START, task.id, attempt=attempt, message=task.description)

        def on_chunk(chunk: str) -> None:
            self._emit(TaskEventType.PROGRESS, task.id, attempt=attempt, message=chunk)

        def settle(
            error: OrchestratorError | None,
            *,
            output: str = "",
            agent_result: AgentExecutionResult | None = None,
            validation: ValidationOutcome | None = None,
            validator_result: AgentExecutionResult | None = None,
        ) -> TaskResult:
            parsed = parse_task_output(output)
            tokens = sum(item.tokens_used for item in (agent_result, validator_result) if item)
            cost = sum(item.cost_usd for item in (agent_result, validator_result) if item)
            result = TaskResult(
                task_id=task.id,
                task_description=task.description,
                status=TaskStatus.COMPLETE if error is None else TaskStatus.FAILED,
                started_at=started_at,
                completed_at=utcnow_iso(),
                duration_seconds=time.monotonic() - started,
                summary=parsed.summary,
                files_created=tuple(item.path for item in parsed.files_created),
                files_modified=tuple(item.path for item in parsed.files_modified),
                files_deleted=tuple(item.path for item in parsed.files_deleted),
                key_decisions=parsed.key_decisions,
                assumptions=parsed.assumptions,
                tests_added=parsed.tests_added,
                tests_passing=parsed.tests_passing,
                tests_failing=parsed.tests_failing,
                acceptance_criteria=criteria_results(task, parsed) if output else (),
                validation=validation,
                tokens_used=tokens,
                cost_usd=cost,
                failure_kind=FailureKind(error.kind) if error is not None else None,
                failure_reason=str(error) if error is not None else None,
                attempts=attempt,
                raw_output=output[:RAW_OUTPUT_LIMIT],
            )
            if error is None:
                self._emit(TaskEventType.COMPLETE, task.id, attempt=attempt, result=result)
            else:
                logger.warning("Task %s attempt %d failed: %s", task.id, attempt, error)
                self._emit(
                    TaskEventType.FAILED,
                    task.id,
                    attempt=attempt,
                    message=str(error),
                    result=result,
                )
            return result

        if self._aborted:
            return settle(TaskExecutionError.aborted(task.id))

        self._running = True
        try:
            try:
                agent_result = await self._run_agent(
                    prompt or build_task_prompt(task, self.context), on_chunk
                )
            except TimeoutError:
                self.adapter.abort()
                return settle(
                    TaskExecutionError.timeout(task.id, self.retry_policy.timeout_seconds)
                )
            except AgentAdapterError as exc:
                return settle(TaskExecutionError.execution_failed(task.id, exc.exit_code, str(exc)))
            except Exception as exc:
                logger.exception("Adapter raised while running task %s", task.id)
                return settle(
                    TaskExecutionError.execution_failed(
                        task.id, None, f"{type(exc).__name__}: {exc}"
                    )
                )

            output = agent_result.output
            if self._aborted:
                return settle(
                    TaskExecutionError.aborted(task.id), output=output, agent_result=agent_result
                )
            if not agent_result.success:
                error = TaskExecutionError.execution_failed(
                    task.id, agent_result.exit_code, agent_result.error or ""
                )
                return settle(error, output=output, agent_result=agent_result)

            error = check_task_output(task, parse_task_output(output))
            if error is not None or not self.validate_results:
                return settle(error, output=output, agent_result=agent_result)

            self._emit(
                TaskEventType.VALIDATE, task.id, attempt=attempt, message="Validating result"
            )
            validation, validator_result = await self._run_validation(task, output)
            if self._aborted:
                error = TaskExecutionError.aborted(task.id)
            elif not validation.passed:
                error = ValidationError.validator_failed(
                    task.id, validation.summary or "validator reported FAIL"
                )
            return settle(
                error,
                output=output,
                agent_result=agent_result,
                validation=validation,
                validator_result=validator_result,
            )
        finally:
            self._running = False

    async def execute_with_retry(self, task: Task, max_retries: int | None = None) -> TaskResult:
        retries = self.retry_policy.max_retries if max_retries is None else max(0, max_retries)
        first_started = time.monotonic()
        tokens = 0
        cost = 0.0
        prompt = build_task_prompt(task, self.context)
        result: TaskResult | None = None
        started_at = utcnow_iso()

        attempts = 0
        for attempt in range(1, retries + 2):
            if result is not None:
                if self._aborted:
                    break
                delay = self.retry_policy.delay_for(attempt - 1)
                self._emit(
                    TaskEventType.RETRY,
                    task.id,
                    attempt=attempt,
                    message=f"Retrying in {delay:.1f}s: {result.failure_reason}",
                    result=result,
                )
                logger.info("Retrying task %s (attempt %d/%d)", task.id, attempt, retries + 1)
                await asyncio.sleep(delay)
                if self._aborted:
                    break
                prompt = build_retry_prompt(
                    task,
                    self.context,
                    previous_output=result.raw_output,
                    failure_reason=result.failure_reason or "unknown failure",
                )
            result = await self.execute(task, prompt=prompt, attempt=attempt)
            attempts = attempt
            tokens += result.tokens_used
            cost += result.cost_usd
            if result.succeeded or result.failure_kind is FailureKind.ABORTED:
                break

        assert result is not None
        if self._aborted and result.failure_kind is not FailureKind.ABORTED:
            # Abort landed between attempts; no further attempt was started.
            result = result.with_updates(
                failure_kind=FailureKind.ABORTED,
                failure_reason=str(TaskExecutionError.aborted(task.id)),
            )
        return result.with_updates(
            attempts=attempts,
            started_at=started_at,
            duration_seconds=time.monotonic() - first_started,
            tokens_used=tokens,
            cost_usd=cost,
        )
