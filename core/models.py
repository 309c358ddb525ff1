import enum
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from core.beam import BeamView
from core.errors import OracleError

# (token_id, incremental log-probability)
Candidate = Tuple[int, float]

@dataclass(frozen=True)
class OracleRequest:
    """One continuation request, sent for each non-terminal beam."""
    beam_index: int
    tokens: Tuple[int, ...]  # everything this beam generated since search start
    confirmed_length: int    # leading tokens already confirmed for every beam
    position: int            # start_position + confirmed_length

    @property
    def pending(self) -> Tuple[int, ...]:
        # Tail the model has not been fed yet if it caches the confirmed prefix
        return self.tokens[self.confirmed_length:]

@dataclass
class OracleResult:
    beam_index: int
    candidates: List[Candidate] = field(default_factory=list)
    error: Optional[OracleError] = None

    @property
    def failed(self) -> bool:
        return self.error is not None

@dataclass(frozen=True)
class BeamsState:
    """What the observer sees after each step. Beams are ordered best first."""
    beams: Tuple[BeamView, ...]
    common_prefix_length: int
    common_prefix: Tuple[int, ...]  # values of the tokens confirmed by this call
    confirmed_length: int           # total confirmed so far, this call included
    step: int
    is_first_call: bool
    is_last_call: bool

class StopReason(enum.Enum):
    ALL_TERMINAL = "all_terminal"
    BEST_TERMINAL = "best_terminal"
    MAX_NEW_TOKENS = "max_new_tokens"
    ORACLE_FAILED = "oracle_failed"

@dataclass
class SearchResult:
    tokens: List[int]  # confirmed token stream, in report order
    best_beam: Optional[BeamView]
    steps: int
    stop_reason: StopReason

@dataclass
class APILogProbsResponse:
    """Top next-token logprobs for one completions request."""
    logprobs: List[Candidate] = field(default_factory=list)
