"""Retry backoff policies.

Each policy is a pure function from the 1-indexed attempt number ``n`` to a
delay in seconds, always clamped to ``[0, max_backoff]``:

================  =====================  ===================================
Strategy          ``delay(n)``           Notes
================  =====================  ===================================
``none``          ``0``                  immediate retry
``linear``        ``base * n``           capped at ``max_backoff``
``exponential``   ``base * 2**(n - 1)``  capped at ``max_backoff``; default
================  =====================  ===================================

A strategy with ``base == 0`` degenerates to ``none``.  Policies hold no
per-call state, so one instance can be shared by every tick; :meth:`reset`
exists so stateful policies can be dropped in later without touching the
executor.

Typical usage::

    from quakewatch.resilience.backoff import get_backoff_strategy

    backoff = get_backoff_strategy("exponential", base=1.0, max_backoff=10.0)
    [backoff.delay(n) for n in range(1, 6)]   # [1.0, 2.0, 4.0, 8.0, 10.0]
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Final

from quakewatch.core.exceptions import ConfigError
from quakewatch.core.models import BackoffKind

__all__ = [
    "BackoffStrategy",
    "NoBackoff",
    "LinearBackoff",
    "ExponentialBackoff",
    "get_backoff_strategy",
]

logger = logging.getLogger(__name__)

#: Exponent ceiling; 2**62 seconds is far beyond any sane cap and keeps the
#: intermediate value a finite float.
_MAX_EXPONENT: Final[int] = 62


class BackoffStrategy(ABC):
    """Delay policy applied between retry attempts.

    Args:
        base: Base delay in seconds (``>= 0``).
        max_backoff: Upper bound on any returned delay (``>= 0``).

    Raises:
        ValueError: If either argument is negative.
    """

    kind: BackoffKind

    def __init__(self, base: float = 0.0, max_backoff: float = 0.0) -> None:
        if base < 0:
            raise ValueError(f"base must be >= 0, got {base!r}")
        if max_backoff < 0:
            raise ValueError(f"max_backoff must be >= 0, got {max_backoff!r}")
        self.base = float(base)
        self.max_backoff = float(max_backoff)

    def delay(self, attempt: int) -> float:
        """Return the delay before retry number *attempt*.

        Args:
            attempt: 1-indexed number of the attempt that just failed.

        Returns:
            Seconds to wait, within ``[0, max_backoff]``.

        Raises:
            ValueError: If *attempt* is less than 1.
        """
        if attempt < 1:
            raise ValueError(f"attempt must be >= 1, got {attempt!r}")
        if self.base == 0:
            return 0.0
        return min(max(self._raw_delay(attempt), 0.0), self.max_backoff)

    @abstractmethod
    def _raw_delay(self, attempt: int) -> float:
        """Unclamped delay for *attempt* (``>= 1``)."""

    def reset(self) -> None:  # noqa: B027
        """Forget any accumulated state.  Built-in policies are stateless."""

    def __repr__(self) -> str:
        return f"{type(self).__name__}(base={self.base}, max_backoff={self.max_backoff})"


class NoBackoff(BackoffStrategy):
    """Retry immediately."""

    kind = BackoffKind.NONE

    def __init__(self, base: float = 0.0, max_backoff: float = 0.0) -> None:
        super().__init__(0.0, max_backoff)

    def _raw_delay(self, attempt: int) -> float:
        return 0.0


class LinearBackoff(BackoffStrategy):
    """``base * n``, capped at ``max_backoff``."""

    kind = BackoffKind.LINEAR

    def _raw_delay(self, attempt: int) -> float:
        return self.base * attempt


class ExponentialBackoff(BackoffStrategy):
    """``base * 2**(n - 1)``, capped at ``max_backoff``."""

    kind = BackoffKind.EXPONENTIAL

    def _raw_delay(self, attempt: int) -> float:
        return self.base * (2.0 ** min(attempt - 1, _MAX_EXPONENT))


_STRATEGIES: Final[dict[BackoffKind, type[BackoffStrategy]]] = {
    BackoffKind.NONE: NoBackoff,
    BackoffKind.LINEAR: LinearBackoff,
    BackoffKind.EXPONENTIAL: ExponentialBackoff,
}


def get_backoff_strategy(
    name: str | BackoffKind,
    base: float,
    max_backoff: float,
) -> BackoffStrategy:
    """Instantiate a backoff policy by name.

    Args:
        name: ``"none"``, ``"linear"`` or ``"exponential"`` (case-insensitive).
        base: Base delay in seconds.
        max_backoff: Delay cap in seconds.

    Returns:
        A ready-to-use :class:`BackoffStrategy`.

    Raises:
        ConfigError: If *name* is unknown or the numeric arguments are invalid.
    """
    try:
        kind = BackoffKind(str(name).lower())
    except ValueError:
        allowed = ", ".join(k.value for k in BackoffKind)
        raise ConfigError(f"Unknown backoff strategy {name!r}; expected one of: {allowed}") from None

    try:
        strategy = _STRATEGIES[kind](base, max_backoff)
    except ValueError as exc:
        raise ConfigError(str(exc)) from exc

    logger.debug("Backoff strategy selected: %r", strategy)
    return strategy
