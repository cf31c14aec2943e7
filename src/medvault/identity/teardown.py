"""Session teardown: one guarded authenticated → unauthenticated transition.

``SessionLifecycle`` owns the "logging out" flag of one session. It is a
small state machine, not a lock:

    active ──begin_teardown()──► tearing_down ──complete()──► active
                                      │
                                      └──fail()──► failed ──(grace delay)──► active

``begin_teardown`` is synchronous so the flag is visible before the first
network call of the logout is even scheduled. While the state is not
``active``, identity resolution reports unauthenticated.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING

from medvault.errors import InvalidTransition

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

__all__ = [
    "ACTIVE",
    "FAILED",
    "TEARING_DOWN",
    "LogoutCoordinator",
    "LogoutStep",
    "SessionLifecycle",
]

logger = logging.getLogger(__name__)

ACTIVE = "active"
TEARING_DOWN = "tearing_down"
FAILED = "failed"


class SessionLifecycle:
    """Owner of one session's teardown state."""

    def __init__(self, grace_seconds: float = 1.0) -> None:
        self._grace = grace_seconds
        self._state = ACTIVE
        self._epoch = 0
        self._last_error = ""
        self._listeners: list[Callable[[str], None]] = []
        self._clear_handle: asyncio.TimerHandle | None = None

    @property
    def state(self) -> str:
        return self._state

    @property
    def epoch(self) -> int:
        """Incremented at every teardown start; stale work compares against it."""
        return self._epoch

    @property
    def is_tearing_down(self) -> bool:
        return self._state != ACTIVE

    @property
    def last_error(self) -> str:
        return self._last_error

    def subscribe(self, listener: Callable[[str], None]) -> Callable[[], None]:
        """Call *listener(state)* on every change. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _unsubscribe

    def begin_teardown(self) -> int:
        if self._state != ACTIVE:
            raise InvalidTransition(f"logout already in progress ({self._state})")
        self._epoch += 1
        self._last_error = ""
        self._set(TEARING_DOWN)
        return self._epoch

    def complete(self) -> None:
        if self._state != TEARING_DOWN:
            raise InvalidTransition(f"no teardown to complete ({self._state})")
        self._set(ACTIVE)

    def fail(self, reason: str) -> None:
        """Record failure; the flag clears after the grace delay.

        Must be called from a running event loop.
        """
        if self._state != TEARING_DOWN:
            raise InvalidTransition(f"no teardown to fail ({self._state})")
        self._last_error = reason
        self._set(FAILED)
        loop = asyncio.get_running_loop()
        self._clear_handle = loop.call_later(self._grace, self._clear_failure)

    def _clear_failure(self) -> None:
        self._clear_handle = None
        if self._state == FAILED:
            self._set(ACTIVE)

    def _set(self, state: str) -> None:
        self._state = state
        for listener in list(self._listeners):
            try:
                listener(state)
            except Exception:
                logger.warning("Lifecycle listener failed on %s", state, exc_info=True)


@dataclass(frozen=True)
class LogoutStep:
    name: str
    action: Callable[[], Awaitable[None]]
    required: bool = True


class LogoutCoordinator:
    """Runs logout steps in order under the lifecycle guard.

    Optional steps may fail without aborting; the first failing required step
    fails the whole teardown, and so does cancelling the task.
    """

    def __init__(self, lifecycle: SessionLifecycle, steps: list[LogoutStep]) -> None:
        self._lifecycle = lifecycle
        self._steps = steps

    def request_logout(self) -> asyncio.Task[bool]:
        """Set the teardown flag now and schedule the steps.

        Raises InvalidTransition if a logout is already running.
        """
        self._lifecycle.begin_teardown()
        task = asyncio.ensure_future(self._run())
        task.add_done_callback(self._on_done)
        return task

    async def logout(self) -> bool:
        return await self.request_logout()

    async def _run(self) -> bool:
        for step in self._steps:
            try:
                await step.action()
            except Exception as exc:
                if not step.required:
                    logger.warning("Logout step %r failed (continuing): %s", step.name, exc)
                    continue
                logger.error("Logout step %r failed: %s", step.name, exc)
                self._lifecycle.fail(f"{step.name} failed")
                return False
            logger.debug("Logout step %r completed", step.name)
        self._lifecycle.complete()
        logger.info("Logout completed")
        return True

    def _on_done(self, task: asyncio.Task[bool]) -> None:
        # cancelled or aborted by a BaseException before complete/fail ran
        if self._lifecycle.state != TEARING_DOWN:
            return
        reason = "logout cancelled" if task.cancelled() else "logout aborted"
        logger.warning("Logout did not finish: %s", reason)
        self._lifecycle.fail(reason)
