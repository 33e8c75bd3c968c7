"""Runs ordered lists of pipeline stages, one after another or side by side."""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Sequence

from packager.errors import PackagerError

logger = logging.getLogger(__name__)


@dataclass
class StageOutcome:
    name: str
    success: bool
    message: str = ""
    output: str = ""
    error: PackagerError | None = None


@dataclass
class Stage:
    """A named unit of pipeline work.

    ``run`` returns a StageOutcome (or None for plain success) and signals
    failure by raising a PackagerError. ``advisory`` stages never fail the
    session.
    """

    name: str
    run: Callable[[], Awaitable[StageOutcome | None]]
    advisory: bool = True
    label: str = ""
    platform: str | None = field(default=None)

    @property
    def display_name(self) -> str:
        return self.label or self.name


StageCallback = Callable[[Stage, StageOutcome], Awaitable[None]]


async def execute_stage(stage: Stage) -> StageOutcome:
    """Run one stage, converting expected failures into an outcome.

    Advisory stages also absorb unexpected exceptions; for required stages
    those propagate.
    """
    try:
        outcome = await stage.run()
    except PackagerError as e:
        return StageOutcome(
            name=stage.name,
            success=False,
            message=e.message,
            output=getattr(e, "output", "") or e.message,
            error=e,
        )
    except OSError as e:
        logger.warning("Stage %s hit an I/O error", stage.name, exc_info=True)
        err = PackagerError(f"{e.__class__.__name__}: {e}", stage=stage.name)
        return StageOutcome(name=stage.name, success=False, message=err.message, output=err.message, error=err)
    except Exception as e:
        if not stage.advisory:
            raise
        logger.exception("Advisory stage %s failed unexpectedly", stage.name)
        err = PackagerError(f"{e.__class__.__name__}: {e}", stage=stage.name)
        return StageOutcome(name=stage.name, success=False, message=err.message, output=err.message, error=err)
    if outcome is None:
        return StageOutcome(name=stage.name, success=True)
    return outcome


async def run_sequential(
    stages: Sequence[Stage], on_done: StageCallback | None = None
) -> list[StageOutcome]:
    outcomes: list[StageOutcome] = []
    for stage in stages:
        outcome = await execute_stage(stage)
        outcomes.append(outcome)
        if on_done is not None:
            await on_done(stage, outcome)
    return outcomes


async def run_parallel(
    stages: Sequence[Stage], on_done: StageCallback | None = None
) -> list[StageOutcome]:
    """Run all stages concurrently; ``on_done`` fires in completion order."""

    async def _one(stage: Stage) -> StageOutcome:
        outcome = await execute_stage(stage)
        if on_done is not None:
            await on_done(stage, outcome)
        return outcome

    return list(await asyncio.gather(*(_one(s) for s in stages)))
