from __future__ import annotations

import asyncio
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ori.capabilities.base import ModelExecutionCapability
from ori.errors import CapabilityError, CapabilityTimeoutError, CapabilityUnavailableError
from ori.packet import PhaseId

CapabilityEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 0
    backoff_seconds: float = 0.5
    timeout_seconds: float = 90.0


class ResilientCapability(ModelExecutionCapability):
    """Wraps primary/fallback capabilities with timeout, retry, and failover."""

    def __init__(
        self,
        primary_name: str,
        primary: ModelExecutionCapability,
        retry_policy: RetryPolicy,
        *,
        fallback_name: str | None = None,
        fallback: ModelExecutionCapability | None = None,
        event_hook: CapabilityEventHook | None = None,
    ) -> None:
        self.primary_name = primary_name
        self.primary = primary
        self.fallback_name = fallback_name
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _attempts(self) -> list[tuple[str, ModelExecutionCapability]]:
        attempts = [(self.primary_name, self.primary)]
        if self.fallback is not None and self.fallback_name != self.primary_name:
            attempts.append((self.fallback_name or "fallback", self.fallback))
        return attempts

    async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
        errors: list[str] = []
        last_error: CapabilityError | None = None
        for capability_name, capability in self._attempts():
            if capability_name != self.primary_name:
                self._emit(
                    {
                        "event": "capability_failover_start",
                        "capability": capability_name,
                        "role": role.value,
                    }
                )
            for attempt in range(self.retry_policy.max_retries + 1):
                if attempt > 0:
                    delay = self.retry_policy.backoff_seconds * (2 ** (attempt - 1))
                    self._emit(
                        {
                            "event": "capability_retry",
                            "capability": capability_name,
                            "attempt": attempt,
                            "delay_seconds": delay,
                            "role": role.value,
                        }
                    )
                    await asyncio.sleep(delay)
                try:
                    payload = await asyncio.wait_for(
                        capability.invoke(role, request),
                        timeout=self.retry_policy.timeout_seconds,
                    )
                except TimeoutError:
                    last_error = CapabilityTimeoutError(
                        f"Capability request timed out after "
                        f"{self.retry_policy.timeout_seconds:.1f}s",
                        capability=capability_name,
                    )
                except CapabilityError as exc:
                    last_error = exc
                except Exception as exc:
                    last_error = CapabilityUnavailableError(
                        f"{type(exc).__name__}: {exc}",
                        capability=capability_name,
                        retriable=True,
                    )
                else:
                    if capability_name != self.primary_name:
                        self._emit(
                            {
                                "event": "capability_fallback_success",
                                "capability": capability_name,
                                "attempt": attempt,
                                "role": role.value,
                            }
                        )
                    if not isinstance(payload, dict):
                        raise CapabilityUnavailableError(
                            f"Capability {capability_name} returned a non-object response.",
                            capability=capability_name,
                            retriable=False,
                        )
                    return payload

                errors.append(f"{capability_name}[{attempt}]: {last_error}")
                self._emit(
                    {
                        "event": "capability_attempt_failed",
                        "capability": capability_name,
                        "attempt": attempt,
                        "role": role.value,
                        "error": str(last_error),
                        "retriable": last_error.retriable,
                    }
                )
                if not last_error.retriable:
                    break

        summary = "; ".join(errors[-6:])
        message = f"All capability attempts failed for {role.value}. {summary}"
        if last_error is None:
            raise CapabilityUnavailableError(message, retriable=False)
        raise type(last_error)(
            message,
            capability=last_error.capability,
            kind=last_error.kind,
            retriable=False,
        ) from last_error
