import logging
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple

from core.beam import Beam, BeamView
from core.models import Candidate
from core.sampling import log_sum_exp

logger = logging.getLogger(__name__)

class BeamSet:
    """
    Fixed-width collection of candidate beams.

    A step is `expand` -> `mark_eob` -> `prune_to_width`. Expansion builds a
    separate candidate pool; `beams` is only replaced when the pool is pruned,
    so a half-finished step is never visible through `beams`.

    `confirmed_length` counts the leading tokens that every beam shares and
    that have already been handed out by `extract_common_prefix`.
    """

    def __init__(self, width: int, seed: Optional[Beam] = None):
        if width < 1:
            raise ValueError(f"width must be >= 1, got {width}")
        self.width = width
        self.beams: List[Beam] = [seed if seed is not None else Beam()]
        self.confirmed_length = 0
        self._pool: Optional[List[Beam]] = None

    def __len__(self) -> int:
        return len(self.beams)

    # ------------------------------------------------------------- #
    # step primitives                                               #
    # ------------------------------------------------------------- #
    def expand(self, oracle_results: Mapping[int, Sequence[Candidate]]) -> List[Beam]:
        """
        Build the candidate pool for this step.

        `oracle_results` maps a beam index to its (token, log_prob)
        continuations. Terminal beams are carried over as they are. A live
        beam with no (or empty) entry is carried over as terminal.
        """
        pool: List[Beam] = []
        for idx, beam in enumerate(self.beams):
            if beam.is_terminal:
                pool.append(beam)
                continue

            candidates = oracle_results.get(idx)
            if not candidates:
                logger.warning(
                    f"Beam {idx} got no continuations; keeping it as terminal "
                    f"(score {beam.cumulative_log_prob:.4f})."
                )
                pool.append(Beam(list(beam.tokens), beam.cumulative_log_prob, True))
                continue

            for token, log_prob in candidates:
                pool.append(beam.extend(token, log_prob))

        self._pool = pool
        return pool

    def mark_eob(self, eos_token_id: Optional[int]) -> int:
        """Flag beams whose last token is EOS. Returns how many were newly flagged."""
        if eos_token_id is None:
            return 0
        flagged = 0
        for beam in self._pending():
            if not beam.is_terminal and beam.tokens and beam.last_token == eos_token_id:
                beam.is_terminal = True
                flagged += 1
        return flagged

    def prune_to_width(self) -> List[Beam]:
        pool = self._pending()
        # stable: equal scores keep their pre-step (parent, candidate) order
        ranked = sorted(pool, key=lambda b: b.cumulative_log_prob, reverse=True)
        dropped = len(ranked) - self.width
        if dropped > 0:
            logger.debug(f"Pruned {dropped} of {len(ranked)} candidate beams.")
        self.beams = ranked[:self.width]
        self._pool = None
        return self.beams

    def renormalize(self) -> None:
        """Shift scores so the surviving beams' probabilities sum to 1."""
        total = log_sum_exp(b.cumulative_log_prob for b in self.beams)
        if total in (float("inf"), float("-inf")):
            return
        for beam in self.beams:
            beam.cumulative_log_prob -= total

    def mark_terminal(self, indices: Iterable[int]) -> List[int]:
        """
        Force beams terminal (e.g. an observer matched a stop sequence).
        All indices are checked before any flag is set.
        """
        wanted = sorted(set(indices))
        for idx in wanted:
            if not 0 <= idx < len(self.beams):
                raise IndexError(f"beam index {idx} out of range for {len(self.beams)} beams")
        newly = []
        for idx in wanted:
            if not self.beams[idx].is_terminal:
                self.beams[idx].is_terminal = True
                newly.append(idx)
        return newly

    # ------------------------------------------------------------- #
    # common prefix                                                 #
    # ------------------------------------------------------------- #
    def extract_common_prefix(self) -> int:
        """
        Length of the token run, starting at `confirmed_length`, shared by
        every beam in the set. The run is then counted as confirmed, so a
        second call without a new step returns 0.
        """
        if not self.beams:
            return 0

        start = self.confirmed_length
        first = self.beams[0].tokens
        n = len(first) - start
        for beam in self.beams[1:]:
            n = min(n, len(beam.tokens) - start)
            for j in range(n):
                if beam.tokens[start + j] != first[start + j]:
                    n = j
                    break
            if n <= 0:
                break
        n = max(n, 0)

        self.confirmed_length += n
        return n

    def common_prefix(self, n: int) -> Tuple[int, ...]:
        """Values of the last `n` confirmed tokens (identical in every beam)."""
        if n <= 0 or not self.beams:
            return ()
        end = self.confirmed_length
        return tuple(self.beams[0].tokens[end - n:end])

    def confirmed_tokens(self) -> List[int]:
        if not self.beams:
            return []
        return list(self.beams[0].tokens[:self.confirmed_length])

    # ------------------------------------------------------------- #
    # queries                                                       #
    # ------------------------------------------------------------- #
    def all_terminal(self) -> bool:
        return all(b.is_terminal for b in self.beams)

    def active_indices(self) -> List[int]:
        return [i for i, b in enumerate(self.beams) if not b.is_terminal]

    def best(self) -> Optional[Beam]:
        return self.beams[0] if self.beams else None

    def collapse_to_best(self) -> None:
        """Drop everything but the top-scoring beam."""
        if len(self.beams) > 1:
            best = max(self.beams, key=lambda b: b.cumulative_log_prob)
            self.beams = [best]

    def views(self) -> Tuple[BeamView, ...]:
        return tuple(b.view() for b in self.beams)

    def _pending(self) -> List[Beam]:
        return self._pool if self._pool is not None else self.beams
