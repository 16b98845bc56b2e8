"""Ordered, named load stages for CASC clients."""

from __future__ import annotations

import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any

import structlog

from casc_source.core.types import ClientState

logger = structlog.get_logger()

StageFunc = Callable[["LoadContext"], Awaitable[None]]


@dataclass
class LoadContext:
    """Values handed from one stage to the next during a load."""
    build: Any
    tables: Any
    values: dict[str, Any] = field(default_factory=dict)

    def __getitem__(self, key: str) -> Any:
        return self.values[key]

    def __setitem__(self, key: str, value: Any) -> None:
        self.values[key] = value


@dataclass
class Stage:
    """One named step of a load.

    Attributes:
        name: Stage name used in logs
        run: Coroutine function reading from and writing to the context
        produces: Client state reached once the stage succeeds, if any
    """
    name: str
    run: StageFunc
    produces: ClientState | None = None


class LoadPipeline:
    """Runs stages strictly in order; the first failure aborts the load."""

    def __init__(self, stages: list[Stage], on_state: Callable[[ClientState], None] | None = None):
        self.stages = stages
        self.on_state = on_state

    @property
    def stage_names(self) -> list[str]:
        return [stage.name for stage in self.stages]

    async def run(self, context: LoadContext) -> LoadContext:
        """Run every stage against `context`.

        Raises:
            Exception: Whatever the failing stage raised, unchanged
        """
        total = len(self.stages)
        for index, stage in enumerate(self.stages, start=1):
            logger.info("load_stage_started", stage=stage.name, step=index, total=total)
            start = time.perf_counter()
            try:
                await stage.run(context)
            except Exception as e:
                logger.error("load_stage_failed", stage=stage.name, error=str(e), error_type=type(e).__name__)
                raise

            logger.info(
                "load_stage_finished",
                stage=stage.name,
                elapsed=round(time.perf_counter() - start, 3),
            )
            if stage.produces is not None and self.on_state is not None:
                self.on_state(stage.produces)

        return context
