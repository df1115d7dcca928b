"""Name-keyed registry of circuit breakers.

The registry is an ordinary object: build one at process start (see
``resilience_core.executor.create_resilient_executor``) and pass it to the
code that needs breakers. Breakers are created lazily on first lookup and
live as long as the registry.
"""

import threading
from collections.abc import Sequence
from dataclasses import replace

from resilience_core.circuit_breaker.breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
)
from resilience_core.circuit_breaker.metrics import BreakerListener
from resilience_core.circuit_breaker.state import BreakerMetrics
from resilience_core.logging import AnyLogger, get_logger, log_debug


class CircuitBreakerRegistry:
    """Hold exactly one breaker per dependency name."""

    def __init__(
        self,
        *,
        defaults: CircuitBreakerConfig | None = None,
        listeners: Sequence[BreakerListener] | None = None,
        logger: AnyLogger | None = None,
    ) -> None:
        """Build an empty registry.

        Args:
            defaults: Config used for breakers created without an explicit one.
            listeners: Listener hooks attached to every breaker created here.
            logger: Structured logger shared by the created breakers.
        """
        self._defaults = CircuitBreakerConfig() if defaults is None else defaults
        self._listeners = tuple(listeners) if listeners is not None else ()
        self._logger = get_logger(__name__) if logger is None else logger
        self._breakers: dict[str, CircuitBreaker] = {}
        self._lock = threading.Lock()

    @property
    def defaults(self) -> CircuitBreakerConfig:
        return self._defaults

    @property
    def names(self) -> list[str]:
        with self._lock:
            return list(self._breakers)

    def get(self, name: str) -> CircuitBreaker | None:
        """Return the breaker for ``name`` without creating one."""
        with self._lock:
            return self._breakers.get(name)

    def get_breaker(
        self,
        name: str,
        config: CircuitBreakerConfig | None = None,
        **overrides: object,
    ) -> CircuitBreaker:
        """Return the breaker for ``name``, creating it on first reference.

        ``config`` (or the registry defaults) with ``overrides`` applied is used
        only when the breaker is created; later lookups return the existing
        instance unchanged.
        """
        with self._lock:
            breaker = self._breakers.get(name)
            if breaker is not None:
                return breaker

            breaker_config = self._defaults if config is None else config
            if overrides:
                breaker_config = replace(breaker_config, **overrides)
            breaker = CircuitBreaker(
                name,
                config=breaker_config,
                listeners=self._listeners,
                logger=self._logger,
            )
            self._breakers[name] = breaker

        log_debug(
            self._logger,
            "circuit_breaker.created",
            breaker=name,
            failure_threshold=breaker_config.failure_threshold,
            success_threshold=breaker_config.success_threshold,
            recovery_timeout=breaker_config.recovery_timeout,
            monitoring_window=breaker_config.monitoring_window,
        )
        return breaker

    def get_all_metrics(self) -> dict[str, BreakerMetrics]:
        """Return a metrics snapshot for every registered breaker."""
        with self._lock:
            breakers = list(self._breakers.values())
        return {breaker.name: breaker.get_metrics() for breaker in breakers}

    def reset(self, name: str) -> bool:
        """Reset one breaker. Returns ``False`` when ``name`` is unknown."""
        breaker = self.get(name)
        if breaker is None:
            return False
        breaker.reset()
        return True

    def reset_all(self) -> None:
        """Reset every registered breaker to ``CLOSED``."""
        with self._lock:
            breakers = list(self._breakers.values())
        for breaker in breakers:
            breaker.reset()
