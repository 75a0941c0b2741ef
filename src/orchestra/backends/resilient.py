from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any

from orchestra.backends.base import AgentBackend, BackendExecutionError, BackendTimeoutError
from orchestra.backends.process import BackendEventHook

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (2 ** (attempt - 1))


class ResilientBackend(AgentBackend):
    """Wraps an ordered list of backends with timeout, retry with backoff, and failover.

    Replies are buffered per attempt, so a caller never sees chunks from a failed try.
    """

    name = "resilient"

    def __init__(
        self,
        backends: list[tuple[str, AgentBackend]],
        retry_policy: RetryPolicy | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        if not backends:
            raise ValueError("ResilientBackend needs at least one backend.")
        self.backends = backends
        self.retry_policy = retry_policy or RetryPolicy()
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    async def _collect(
        self,
        backend: AgentBackend,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> list[str]:
        async def _consume() -> list[str]:
            return [
                chunk async for chunk in backend.execute(system_prompt, user_prompt, context)
            ]

        try:
            return await asyncio.wait_for(_consume(), timeout=self.retry_policy.timeout_seconds)
        except TimeoutError as exc:
            raise BackendTimeoutError(
                f"Backend request timed out after {self.retry_policy.timeout_seconds:.1f}s",
                backend=backend.name,
                retriable=True,
            ) from exc

    async def execute(
        self,
        system_prompt: str,
        user_prompt: str,
        context: dict[str, Any],
    ) -> AsyncIterator[str]:
        primary_name = self.backends[0][0]
        errors: list[str] = []
        for backend_name, backend in self.backends:
            if backend_name != primary_name and errors:
                self._emit({"event": "backend_failover_start", "backend": backend_name})
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.delay_for(attempt)
                    self._emit(
                        {
                            "event": "backend_retry",
                            "backend": backend_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    chunks = await self._collect(backend, system_prompt, user_prompt, context)
                except BackendExecutionError as exc:
                    retriable = exc.retriable
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                except Exception as exc:
                    retriable = True
                    errors.append(f"{backend_name}[{attempt}]: {exc}")
                else:
                    if backend_name != primary_name:
                        self._emit(
                            {
                                "event": "backend_fallback_success",
                                "backend": backend_name,
                                "attempt": attempt,
                            }
                        )
                    for chunk in chunks:
                        yield chunk
                    return

                logger.warning(
                    "backend %s attempt %s failed: %s", backend_name, attempt, errors[-1]
                )
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": backend_name,
                        "attempt": attempt,
                        "error": errors[-1],
                        "retriable": retriable,
                    }
                )
                if not retriable:
                    break

        raise BackendExecutionError(
            f"All backend attempts failed. {'; '.join(errors[-6:])}",
            backend=self.name,
            retriable=False,
        )
