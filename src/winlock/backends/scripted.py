"""Deterministic backends for tests and smoke runs."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Callable, Iterable
from typing import Any, TypeAlias

from winlock.backends.base import BackendResponse
from winlock.context import ContextBundle
from winlock.errors import BackendError
from winlock.transcript import PromptTurn

ScriptStep: TypeAlias = BackendResponse | BaseException | Callable[[ContextBundle], Any]


class ScriptedBackend:
    """Replays a fixed list of responses, errors or callables, one per request.

    A callable step receives the bundle and returns (or awaits to) a
    ``BackendResponse``. Every received bundle is kept in ``bundles``.
    """

    name = "scripted"

    def __init__(self, steps: Iterable[ScriptStep], *, delay: float = 0.0) -> None:
        self._steps = list(steps)
        self._delay = delay
        self.bundles: list[ContextBundle] = []
        self.in_flight = 0
        self.max_in_flight = 0

    @property
    def remaining(self) -> int:
        return len(self._steps)

    async def send(self, bundle: ContextBundle) -> BackendResponse:
        self.bundles.append(bundle)
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self._delay:
                await asyncio.sleep(self._delay)
            if not self._steps:
                raise BackendError.fatal("script exhausted")
            step = self._steps.pop(0)
            if isinstance(step, BaseException):
                raise step
            if isinstance(step, BackendResponse):
                return step
            result = step(bundle)
            if inspect.isawaitable(result):
                result = await result
            return result
        finally:
            self.in_flight -= 1


class EchoBackend:
    """Completes immediately by echoing the most recent prompt."""

    name = "echo"

    async def send(self, bundle: ContextBundle) -> BackendResponse:
        prompt = next((turn.text for turn in reversed(bundle.turns) if isinstance(turn, PromptTurn)), "")
        return BackendResponse(content=prompt)
