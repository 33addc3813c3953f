from __future__ import annotations

import inspect
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable


LOGGER = logging.getLogger(__name__)

HookCallback = Callable[[dict[str, Any]], object | Awaitable[object]]

RUN_HOOK_EVENTS = (
    "before_run",
    "after_run",
    "before_node",
    "after_node",
    "on_pause",
    "on_error",
)


@dataclass(slots=True)
class HookInvocation:
    event: str
    callback_name: str
    result: object | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class WorkflowHookRegistry:
    """Callbacks fired around workflow runs and node visits.

    Each callback receives a fresh copy of the event context. A callback that
    raises is logged and reported in its ``HookInvocation``; the remaining
    callbacks for the event still run.
    """

    def __init__(self) -> None:
        self._callbacks: dict[str, list[HookCallback]] = {event: [] for event in RUN_HOOK_EVENTS}

    def register(self, event: str, callback: HookCallback) -> None:
        if event not in self._callbacks:
            raise ValueError(f"Unknown hook event '{event}'. Expected one of: {', '.join(RUN_HOOK_EVENTS)}")
        self._callbacks[event].append(callback)

    def unregister(self, event: str, callback: HookCallback) -> bool:
        callbacks = self._callbacks.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)
            return True
        return False

    def clear(self, event: str | None = None) -> None:
        for name, callbacks in self._callbacks.items():
            if event is None or name == event:
                callbacks.clear()

    def has_callbacks(self, event: str) -> bool:
        return bool(self._callbacks.get(event))

    async def emit(self, event: str, context: dict[str, Any]) -> list[HookInvocation]:
        invocations: list[HookInvocation] = []
        for callback in tuple(self._callbacks.get(event, ())):
            name = str(getattr(callback, "__name__", callback.__class__.__name__))
            try:
                result = callback(dict(context))
                if inspect.isawaitable(result):
                    result = await result
            except Exception as exc:  # noqa: BLE001
                LOGGER.warning("Hook %s for %s failed: %s", name, event, exc, exc_info=True)
                invocations.append(HookInvocation(event=event, callback_name=name, error=str(exc) or repr(exc)))
                continue
            invocations.append(HookInvocation(event=event, callback_name=name, result=result))
        return invocations
