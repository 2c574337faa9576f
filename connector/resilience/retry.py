"""Retry con backoff exponencial para llamadas HTTP transitorias.

Usado por el cliente del registro de dispositivos; los errores que agotan los
reintentos se propagan al llamador.
"""

from __future__ import annotations

import logging
import os
import random
import time
from dataclasses import dataclass
from typing import Callable, Optional, Tuple, Type, TypeVar

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass
class RetryConfig:
    """Configuración para retry con backoff."""

    max_attempts: int = 3
    base_delay: float = 0.5  # segundos
    max_delay: float = 10.0  # segundos
    exponential_base: float = 2.0
    jitter: bool = True  # ±25%
    retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)

    @classmethod
    def from_env(cls, retryable_exceptions: Tuple[Type[Exception], ...] = (Exception,)) -> "RetryConfig":
        return cls(
            max_attempts=int(os.getenv("REGISTRY_RETRY_ATTEMPTS", "3")),
            base_delay=float(os.getenv("REGISTRY_RETRY_BASE_DELAY", "0.5")),
            max_delay=float(os.getenv("REGISTRY_RETRY_MAX_DELAY", "10")),
            retryable_exceptions=retryable_exceptions,
        )

    def calculate_delay(self, attempt: int) -> float:
        """Delay en segundos para el intento `attempt` (1-indexed)."""
        delay = self.base_delay * (self.exponential_base ** (attempt - 1))
        delay = min(delay, self.max_delay)

        if self.jitter:
            jitter_range = delay * 0.25
            delay += random.uniform(-jitter_range, jitter_range)

        return max(0, delay)


class RetryExecutor:
    """Ejecutor de operaciones con retry."""

    def __init__(self, config: Optional[RetryConfig] = None, sleep: Callable[[float], None] = time.sleep):
        self._config = config or RetryConfig()
        self._sleep = sleep
        self._total_attempts = 0
        self._total_retries = 0
        self._total_failures = 0

    @property
    def stats(self) -> dict:
        return {
            "total_attempts": self._total_attempts,
            "total_retries": self._total_retries,
            "total_failures": self._total_failures,
        }

    def execute(self, func: Callable[..., T], *args, **kwargs) -> T:
        """Ejecuta `func` reintentando las excepciones configuradas.

        Raises:
            La última excepción si se agotan los reintentos
        """
        for attempt in range(1, self._config.max_attempts + 1):
            self._total_attempts += 1

            try:
                return func(*args, **kwargs)

            except self._config.retryable_exceptions as e:
                if attempt == self._config.max_attempts:
                    self._total_failures += 1
                    logger.error(
                        "RETRY_EXHAUSTED func=%s attempts=%d err=%s",
                        getattr(func, "__name__", func), attempt, e,
                    )
                    raise

                self._total_retries += 1
                delay = self._config.calculate_delay(attempt)
                logger.warning(
                    "RETRY func=%s attempt=%d/%d delay=%.2fs err=%s",
                    getattr(func, "__name__", func), attempt, self._config.max_attempts, delay, e,
                )
                self._sleep(delay)

        raise RuntimeError("Retry loop completed without result")
