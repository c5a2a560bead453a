"""Generation epoch for clear-cancellation and the is-generating tracker."""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Optional

logger = logging.getLogger(__name__)


class GenerationEpoch:
    """Counter bumped once per conversation reset.

    A generation is valid only while the epoch it started under is still
    current.
    """

    def __init__(self) -> None:
        self._value = 0

    @property
    def current(self) -> int:
        return self._value

    def advance(self) -> int:
        self._value += 1
        return self._value

    def token(self) -> "EpochToken":
        return EpochToken(self, self._value)


@dataclass(frozen=True)
class EpochToken:
    epoch: GenerationEpoch
    value: int

    @property
    def valid(self) -> bool:
        return self.epoch.current == self.value


class GenerationTracker:
    """Exposes whether a reply is currently being computed.

    Counts in-flight generations so overlapping turns keep the flag raised
    until the last one finishes. ``on_change`` is called with the new value
    whenever the flag flips.
    """

    def __init__(self, on_change: Optional[Callable[[bool], None]] = None) -> None:
        self._in_flight = 0
        self.on_change = on_change

    @property
    def is_generating(self) -> bool:
        return self._in_flight > 0

    @contextmanager
    def track(self) -> Iterator[None]:
        self._set(self._in_flight + 1)
        try:
            yield
        finally:
            self._set(self._in_flight - 1)

    def _set(self, count: int) -> None:
        before = self.is_generating
        self._in_flight = max(0, count)
        after = self.is_generating
        if before != after and self.on_change is not None:
            try:
                self.on_change(after)
            except Exception:
                logger.exception("is_generating listener failed")
