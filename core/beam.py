import math
from dataclasses import dataclass, field
from typing import List, Tuple

@dataclass
class Beam:
    tokens: List[int] = field(default_factory=list)  # generated since search start, append-only
    cumulative_log_prob: float = 0.0
    is_terminal: bool = False

    @property
    def last_token(self) -> int | None:
        return self.tokens[-1] if self.tokens else None

    def extend(self, token: int, log_prob: float) -> "Beam":
        """Child beam with one more token; the parent is left untouched."""
        return Beam(
            tokens=self.tokens + [token],
            cumulative_log_prob=self.cumulative_log_prob + log_prob,
        )

    def view(self) -> "BeamView":
        return BeamView(tuple(self.tokens), self.cumulative_log_prob, self.is_terminal)


@dataclass(frozen=True)
class BeamView:
    """Read-only snapshot of a Beam handed to observers."""
    tokens: Tuple[int, ...]
    cumulative_log_prob: float
    is_terminal: bool

    @property
    def probability(self) -> float:
        return math.exp(self.cumulative_log_prob)

    def __str__(self) -> str:
        return (
            f"p({self.probability:.6g}) eob({self.is_terminal}) "
            f"tokens({' '.join(str(t) for t in self.tokens)})"
        )
