from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Generic, Protocol, TypeVar

logger = logging.getLogger(__name__)

InputT = TypeVar("InputT", contravariant=True)
OutputT = TypeVar("OutputT")


class PhaseState(StrEnum):
    PENDING = "pending"
    SETTING_UP = "setting_up"
    EXECUTING = "executing"
    PERSISTING = "persisting"
    COMPLETE = "complete"
    FAILED = "failed"


class PhaseLifecycle(Protocol[InputT, OutputT]):
    """The three steps a workflow phase supplies; ``run_phase`` drives them."""

    phase_number: int
    name: str

    async def setup(self, payload: InputT) -> None: ...

    async def execute(self, payload: InputT) -> OutputT: ...

    async def persist(self, output: OutputT) -> None: ...

    def cost_usd(self) -> float: ...


@dataclass(slots=True)
class PhaseRunResult(Generic[OutputT]):
    phase_number: int
    phase_name: str
    success: bool
    state: PhaseState
    data: OutputT | None = None
    error: str | None = None
    cost_usd: float = 0.0
    transitions: list[PhaseState] = field(default_factory=list)


TransitionHook = Callable[[PhaseState], None]


async def run_phase(
    lifecycle: PhaseLifecycle[InputT, OutputT],
    payload: InputT,
    *,
    on_transition: TransitionHook | None = None,
) -> PhaseRunResult[OutputT]:
    transitions: list[PhaseState] = [PhaseState.PENDING]

    def move(state: PhaseState) -> None:
        transitions.append(state)
        logger.debug("Phase %d (%s): %s", lifecycle.phase_number, lifecycle.name, state)
        if on_transition is not None:
            on_transition(state)

    logger.info("Phase %d: %s", lifecycle.phase_number, lifecycle.name)
    try:
        move(PhaseState.SETTING_UP)
        await lifecycle.setup(payload)
        move(PhaseState.EXECUTING)
        output = await lifecycle.execute(payload)
        move(PhaseState.PERSISTING)
        await lifecycle.persist(output)
    except Exception as exc:
        logger.warning("Phase %d failed: %s", lifecycle.phase_number, exc)
        move(PhaseState.FAILED)
        return PhaseRunResult(
            phase_number=lifecycle.phase_number,
            phase_name=lifecycle.name,
            success=False,
            state=PhaseState.FAILED,
            error=str(exc),
            cost_usd=lifecycle.cost_usd(),
            transitions=transitions,
        )

    move(PhaseState.COMPLETE)
    logger.info("Phase %d complete", lifecycle.phase_number)
    return PhaseRunResult(
        phase_number=lifecycle.phase_number,
        phase_name=lifecycle.name,
        success=True,
        state=PhaseState.COMPLETE,
        data=output,
        cost_usd=lifecycle.cost_usd(),
        transitions=transitions,
    )
