# registry.py
from __future__ import annotations

from typing import Dict, Iterable, List

from .errors import DuplicateStageError, RegistryFrozenError, UnknownStageError
from .model import Stage


class StageRegistry:
    """
    The declared set of stages for one run.

    Registration order is preserved. Once frozen (the scheduler freezes it when
    a run starts) the registry is a read-only snapshot.
    """

    def __init__(self, stages: Iterable[Stage] = ()):
        self._stages: Dict[str, Stage] = {}
        self._frozen = False
        for s in stages:
            self.register(s)

    def register(self, stage: Stage) -> Stage:
        if self._frozen:
            raise RegistryFrozenError(stage.name)
        if stage.name in self._stages:
            raise DuplicateStageError(stage.name)
        self._stages[stage.name] = stage
        return stage

    def get(self, name: str) -> Stage:
        try:
            return self._stages[name]
        except KeyError:
            raise UnknownStageError(name, list(self._stages)) from None

    def all(self) -> List[Stage]:
        return list(self._stages.values())

    def names(self) -> List[str]:
        return list(self._stages)

    def freeze(self) -> StageRegistry:
        self._frozen = True
        return self

    @property
    def frozen(self) -> bool:
        return self._frozen

    def __contains__(self, name: object) -> bool:
        return name in self._stages

    def __len__(self) -> int:
        return len(self._stages)

    def __iter__(self):
        return iter(self._stages.values())
