"""Step registry and plan validation."""

import logging
from typing import Iterable, Iterator

from ..errors import InvalidPlanError
from .models import ProvisioningStep

_logging = logging.getLogger(__name__)


class StepRegistry:
    """Ordered, validated collection of provisioning steps.

    Validation happens in the constructor so an invalid plan is rejected
    before any host command runs.
    """

    def __init__(self, steps: Iterable[ProvisioningStep]):
        self._steps = list(steps)
        self._by_name: dict[str, ProvisioningStep] = {}
        self._validate()
        self._order = self._resolve_order()
        _logging.debug(f"Plan order: {' -> '.join(s.name for s in self._order)}")

    def _validate(self) -> None:
        for step in self._steps:
            if step.name in self._by_name:
                raise InvalidPlanError(f"Duplicate step name '{step.name}'")
            self._by_name[step.name] = step

        for step in self._steps:
            for dep in step.depends_on:
                if dep == step.name:
                    raise InvalidPlanError(f"Step '{step.name}' depends on itself")
                if dep not in self._by_name:
                    raise InvalidPlanError(
                        f"Step '{step.name}' depends on unknown step '{dep}'"
                    )

    def _resolve_order(self) -> list[ProvisioningStep]:
        # Kahn's algorithm; ties broken by declaration order so the plan reads
        # the way it was written.
        position = {s.name: i for i, s in enumerate(self._steps)}
        indeg = {s.name: len(s.depends_on) for s in self._steps}
        dependents: dict[str, list[str]] = {s.name: [] for s in self._steps}
        for step in self._steps:
            for dep in step.depends_on:
                dependents[dep].append(step.name)

        ready = sorted((n for n, d in indeg.items() if d == 0), key=position.get)
        order: list[ProvisioningStep] = []
        while ready:
            name = ready.pop(0)
            order.append(self._by_name[name])
            for child in dependents[name]:
                indeg[child] -= 1
                if indeg[child] == 0:
                    ready.append(child)
            ready.sort(key=position.get)

        if len(order) != len(self._steps):
            stuck = sorted((n for n, d in indeg.items() if d > 0), key=position.get)
            raise InvalidPlanError(
                f"Cyclic dependency detected among steps: {', '.join(stuck)}"
            )
        return order

    def ordered(self) -> list[ProvisioningStep]:
        return list(self._order)

    def get(self, name: str) -> ProvisioningStep:
        try:
            return self._by_name[name]
        except KeyError:
            raise KeyError(f"Unknown step '{name}'") from None

    def names(self) -> list[str]:
        return [s.name for s in self._order]

    def __contains__(self, name: object) -> bool:
        return name in self._by_name

    def __iter__(self) -> Iterator[ProvisioningStep]:
        return iter(self._order)

    def __len__(self) -> int:
        return len(self._steps)


__all__ = ["StepRegistry"]
