"""
Ordered multi-step operations with compensation.

    saga = Saga("activate_campaign")
    saga.step("create_presale", create, compensate=resolve)
    saga.step("store_presale_id", store)
    results = await saga.run()

When a step raises, the compensations of the steps that already completed run
in reverse order, each receiving the result of its own action. A compensation
that raises does not stop the unwind; the failure is reported as
``requires_manual_resolution`` together with the results of the completed
steps, so whoever reads the error has what they need to clean up by hand.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

log = logging.getLogger(__name__)

Action = Callable[[Dict[str, Any]], Awaitable[Any]]
Compensation = Callable[[Any], Awaitable[Any]]


@dataclass
class Step:
    name: str
    action: Action
    compensation: Optional[Compensation] = None


@dataclass
class CompensationError:
    step: str
    error: BaseException


class SagaFailed(Exception):
    def __init__(
        self,
        saga: str,
        step: str,
        error: BaseException,
        results: Dict[str, Any],
        compensation_errors: List[CompensationError],
    ) -> None:
        self.saga = saga
        self.step = step
        self.error = error
        self.results = results
        self.compensation_errors = compensation_errors
        super().__init__(f"{saga}: step '{step}' failed: {error}")

    @property
    def requires_manual_resolution(self) -> bool:
        return bool(self.compensation_errors)


@dataclass
class Saga:
    name: str
    steps: List[Step] = field(default_factory=list)

    def step(self, name: str, action: Action,
             compensate: Optional[Compensation] = None) -> "Saga":
        self.steps.append(Step(name, action, compensate))
        return self

    async def run(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        done: List[Step] = []
        for step in self.steps:
            try:
                results[step.name] = await step.action(results)
            except Exception as e:
                log.error("[Saga %s] step '%s' failed: %s",
                          self.name, step.name, e)
                errors = await self._unwind(done, results)
                raise SagaFailed(self.name, step.name, e, results,
                                 errors) from e
            done.append(step)
        return results

    async def _unwind(self, done: List[Step],
                      results: Dict[str, Any]) -> List[CompensationError]:
        errors: List[CompensationError] = []
        for step in reversed(done):
            if step.compensation is None:
                continue
            try:
                await step.compensation(results[step.name])
                log.info("[Saga %s] compensated '%s'", self.name, step.name)
            except Exception as e:
                log.critical(
                    "[Saga %s] compensation for '%s' failed: %s "
                    "- manual resolution required", self.name, step.name, e)
                errors.append(CompensationError(step.name, e))
        return errors
