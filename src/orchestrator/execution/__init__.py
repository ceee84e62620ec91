from orchestrator.execution.orchestrator import ExecutionOptions, OrchestrationResult, Orchestrator
from orchestrator.execution.phase_executor import PhaseExecutionResult, PhaseExecutor
from orchestrator.execution.prompts import ProjectContext, TaskContext
from orchestrator.execution.task_executor import RetryPolicy, TaskExecutor

__all__ = [
    "ExecutionOptions",
    "OrchestrationResult",
    "Orchestrator",
    "PhaseExecutionResult",
    "PhaseExecutor",
    "ProjectContext",
    "RetryPolicy",
    "TaskContext",
    "TaskExecutor",
]
