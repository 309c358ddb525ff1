"""
Observers receive a `BeamsState` after every search step and once more at
the end (`is_last_call=True`). They may return indices of beams that should
be marked terminal; the engine applies them. Any callable with the
signature `observer(state) -> Optional[Iterable[int]]` works.
"""
import logging
from typing import Callable, Iterable, List, Optional, Sequence, Set

from core.models import BeamsState
from utils.config_loader import AppConfig

logger = logging.getLogger(__name__)

Observer = Callable[[BeamsState], Optional[Iterable[int]]]


class ResponseCollector:
    """Accumulates confirmed tokens as they are reported."""

    def __init__(self, on_tokens: Optional[Callable[[Sequence[int]], None]] = None):
        self.tokens: List[int] = []
        self.calls = 0
        self.finished = False
        self._on_tokens = on_tokens

    def __call__(self, state: BeamsState) -> None:
        self.calls += 1
        if state.common_prefix_length:
            self.tokens.extend(state.common_prefix)
            if self._on_tokens is not None:
                self._on_tokens(state.common_prefix)
        if state.is_last_call:
            self.finished = True
        return None


class StopSequenceObserver:
    """
    Flags beams whose tokens end with any of the given stop sequences.
    Only tokens generated during the search are matched.
    """

    def __init__(self, stop_sequences: Iterable[Sequence[int]]):
        self.stop_sequences = [tuple(s) for s in stop_sequences if len(s) > 0]

    @classmethod
    def from_config(cls, config: AppConfig) -> "StopSequenceObserver":
        return cls(config.stop_sequences)

    def __call__(self, state: BeamsState) -> Set[int]:
        hits = set()
        for idx, beam in enumerate(state.beams):
            if beam.is_terminal:
                continue
            for seq in self.stop_sequences:
                if len(beam.tokens) >= len(seq) and beam.tokens[-len(seq):] == seq:
                    hits.add(idx)
                    break
        if hits:
            logger.debug(f"Stop sequence matched for beams {sorted(hits)}")
        return hits


class ProgressLogger:
    """Logs the current beams on every call."""

    def __init__(self, level: int = logging.DEBUG, log: Optional[logging.Logger] = None):
        self.level = level
        self.log = log or logger

    def __call__(self, state: BeamsState) -> None:
        if not self.log.isEnabledFor(self.level):
            return None
        self.log.log(
            self.level,
            f"step={state.step} confirmed+={state.common_prefix_length} "
            f"(total {state.confirmed_length}) last_call={state.is_last_call}",
        )
        for i, beam in enumerate(state.beams):
            self.log.log(self.level, f"beams[{i}]: {beam}")
        return None


class ObserverChain:
    """Calls several observers in order and unions their terminate requests."""

    def __init__(self, *observers: Observer):
        self.observers = list(observers)

    def __call__(self, state: BeamsState) -> Set[int]:
        requested: Set[int] = set()
        for obs in self.observers:
            out = obs(state)
            if out:
                requested.update(out)
        return requested
