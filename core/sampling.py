import logging
import math
from typing import Iterable, List, Mapping, Tuple, Union

from core.models import Candidate

logger = logging.getLogger(__name__)

Distribution = Union[Mapping[int, float], Iterable[Tuple[int, float]]]


def as_pairs(distribution: Distribution) -> List[Candidate]:
    if isinstance(distribution, Mapping):
        items = distribution.items()
    else:
        items = distribution
    return [(int(token), float(log_prob)) for token, log_prob in items]


def select_candidates(distribution: Distribution, fan_out: int) -> List[Candidate]:
    """
    Reduce an oracle distribution (token -> log-probability) to the
    `fan_out` most likely continuations, best first.

    Ties keep the order the oracle returned them in. Tokens with a
    log-probability of -inf (probability zero) or NaN are dropped.
    """
    if fan_out < 1:
        raise ValueError(f"fan_out must be >= 1, got {fan_out}")

    pairs = as_pairs(distribution)
    usable = [(tok, lp) for tok, lp in pairs if not math.isnan(lp) and lp != -math.inf]
    if len(usable) != len(pairs):
        logger.debug(f"Dropped {len(pairs) - len(usable)} zero-probability tokens from distribution.")

    # sorted() is stable, so equal scores keep oracle order
    ranked = sorted(usable, key=lambda item: item[1], reverse=True)
    selected = ranked[:fan_out]

    logger.debug(f"Selected {len(selected)} candidates: {selected}")
    return selected


def log_sum_exp(values: Iterable[float]) -> float:
    vals = list(values)
    if not vals:
        return -math.inf
    top = max(vals)
    if top == -math.inf:
        return -math.inf
    return top + math.log(sum(math.exp(v - top) for v in vals))
