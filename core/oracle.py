import abc
import logging
from typing import List, Sequence

from core.errors import OracleError
from core.models import OracleRequest, OracleResult
from core.sampling import Distribution, as_pairs

logger = logging.getLogger(__name__)

class ModelOracle(abc.ABC):
    """
    Source of next-token log-probabilities.

    Implementations override `continue_sequence`; the default
    `continue_many` calls it once per request. Override `continue_many`
    to batch or parallelize, but return only after every request has a
    result (or an error).
    """

    @abc.abstractmethod
    def continue_sequence(self, request: OracleRequest) -> Distribution:
        """
        Next-token distribution for one beam, as a mapping token -> log_prob
        or a sequence of (token, log_prob) pairs. Raise OracleError when the
        context is too long or the backend is unavailable.
        """

    def continue_many(self, requests: Sequence[OracleRequest]) -> List[OracleResult]:
        results = []
        for req in requests:
            try:
                dist = self.continue_sequence(req)
                results.append(OracleResult(req.beam_index, as_pairs(dist)))
            except OracleError as e:
                if e.beam_index is None:
                    e.beam_index = req.beam_index
                logger.warning(f"Oracle failed for beam {req.beam_index}: {e}")
                results.append(OracleResult(req.beam_index, error=e))
        return results
