import logging
from typing import Dict, List, Optional, Tuple

from core.beam_set import BeamSet
from core.errors import ConfigurationError, ObserverError, OracleError
from core.models import BeamsState, Candidate, OracleRequest, SearchResult, StopReason
from core.observer import Observer
from core.oracle import ModelOracle
from core.sampling import select_candidates
from utils.config_loader import SearchConfig

logger = logging.getLogger(__name__)

class BeamSearchDriver:
    """
    Runs one beam search against a model oracle and streams the tokens all
    beams agree on to an observer.

    Every step asks the oracle to continue each live beam, expands and
    prunes the beam set, confirms the common prefix and calls the observer.
    When the search stops, the beam set collapses to its best beam and the
    rest of that beam is confirmed in a final `is_last_call` report.
    """

    def __init__(
        self,
        oracle: ModelOracle,
        observer: Optional[Observer],
        width: int,
        start_position: int = 0,
        max_new_tokens: int = 256,
        eos_token_id: Optional[int] = None,
        fan_out: Optional[int] = None,
        stop_when_best_terminal: bool = False,
        renormalize: bool = False,
    ):
        if isinstance(width, bool) or not isinstance(width, int) or width < 1:
            raise ConfigurationError(f"beam width must be a positive integer, got {width!r}")
        if isinstance(max_new_tokens, bool) or not isinstance(max_new_tokens, int) or max_new_tokens < 1:
            raise ConfigurationError(f"max_new_tokens must be a positive integer, got {max_new_tokens!r}")
        if fan_out is not None and (isinstance(fan_out, bool) or not isinstance(fan_out, int) or fan_out < 1):
            raise ConfigurationError(f"fan_out must be a positive integer, got {fan_out!r}")
        if start_position < 0:
            raise ConfigurationError(f"start_position must be >= 0, got {start_position!r}")

        self.oracle = oracle
        self.observer = observer
        self.width = width
        self.start_position = start_position
        self.max_new_tokens = max_new_tokens
        self.eos_token_id = eos_token_id
        self.fan_out = fan_out or width
        self.stop_when_best_terminal = stop_when_best_terminal
        self.renormalize = renormalize

        self.beam_set: Optional[BeamSet] = None
        self.confirmed_tokens: List[int] = []
        self._observer_calls = 0

    @classmethod
    def from_config(cls, config: SearchConfig, oracle: ModelOracle, observer: Optional[Observer]) -> "BeamSearchDriver":
        return cls(
            oracle,
            observer,
            width=config.beam_width,
            start_position=config.start_position,
            max_new_tokens=config.max_new_tokens,
            eos_token_id=config.eos_token_id,
            fan_out=config.fan_out,
            stop_when_best_terminal=config.stop_when_best_terminal,
            renormalize=config.renormalize,
        )

    # ------------------------------------------------------------- #
    # main loop                                                     #
    # ------------------------------------------------------------- #
    def run(self) -> SearchResult:
        self.beam_set = BeamSet(self.width)
        self.confirmed_tokens = []
        self._observer_calls = 0

        bs = self.beam_set
        step = 0
        stop_reason: Optional[StopReason] = None

        logger.info(
            f"Beam search starting: width={self.width} fan_out={self.fan_out} "
            f"max_new_tokens={self.max_new_tokens} start_position={self.start_position}"
        )

        while stop_reason is None:
            requests = self._build_requests()
            continuations, failed = self._query_oracle(requests)

            if not continuations:
                # nothing came back for any live beam: keep what we have and stop
                bs.mark_terminal(failed)
                logger.warning(f"Oracle failed for every live beam at step {step + 1}; ending search.")
                stop_reason = StopReason.ORACLE_FAILED
                break

            step += 1
            bs.expand(continuations)
            bs.mark_eob(self.eos_token_id)
            bs.prune_to_width()
            if self.renormalize:
                bs.renormalize()

            n = bs.extract_common_prefix()
            prefix = bs.common_prefix(n)
            self.confirmed_tokens.extend(prefix)

            logger.debug(
                f"Step {step}: {len(bs)} beams, {len(bs.active_indices())} live, "
                f"confirmed {n} (total {bs.confirmed_length})"
            )

            self._notify(step, n, prefix, last_call=False)
            stop_reason = self._check_done(step)

        return self._finish(step, stop_reason)

    # ------------------------------------------------------------- #
    # helpers                                                       #
    # ------------------------------------------------------------- #
    def _build_requests(self) -> List[OracleRequest]:
        bs = self.beam_set
        position = self.start_position + bs.confirmed_length
        return [
            OracleRequest(
                beam_index=idx,
                tokens=tuple(bs.beams[idx].tokens),
                confirmed_length=bs.confirmed_length,
                position=position,
            )
            for idx in bs.active_indices()
        ]

    def _query_oracle(self, requests: List[OracleRequest]) -> Tuple[Dict[int, List[Candidate]], List[int]]:
        """Returns (beam index -> selected candidates, indices that failed)."""
        wanted = [r.beam_index for r in requests]
        try:
            results = self.oracle.continue_many(requests)
        except OracleError as e:
            logger.error(f"Oracle batch request failed: {e}")
            return {}, wanted

        continuations: Dict[int, List[Candidate]] = {}
        for res in results:
            if res.beam_index not in wanted:
                logger.warning(f"Ignoring oracle result for unknown beam {res.beam_index}")
                continue
            if res.failed:
                logger.warning(f"Beam {res.beam_index} failed: {res.error}")
                continue
            selected = select_candidates(res.candidates, self.fan_out)
            if selected:
                continuations[res.beam_index] = selected

        failed = [idx for idx in wanted if idx not in continuations]
        return continuations, failed

    def _notify(self, step: int, n: int, prefix: Tuple[int, ...], last_call: bool) -> None:
        bs = self.beam_set
        state = BeamsState(
            beams=bs.views(),
            common_prefix_length=n,
            common_prefix=prefix,
            confirmed_length=bs.confirmed_length,
            step=step,
            is_first_call=self._observer_calls == 0,
            is_last_call=last_call,
        )
        self._observer_calls += 1
        if self.observer is None:
            return

        try:
            requested = self.observer(state)
        except ObserverError:
            raise
        except Exception as e:
            raise ObserverError(f"observer raised at step {step}: {e}") from e

        if last_call or not requested:
            return
        try:
            newly = bs.mark_terminal(requested)
        except (IndexError, TypeError) as e:
            raise ObserverError(f"observer returned invalid beam indices {requested!r}: {e}") from e
        if newly:
            logger.debug(f"Observer terminated beams {newly} at step {step}")

    def _check_done(self, step: int) -> Optional[StopReason]:
        bs = self.beam_set
        if bs.all_terminal():
            return StopReason.ALL_TERMINAL
        if self.stop_when_best_terminal and bs.best().is_terminal:
            return StopReason.BEST_TERMINAL
        if step >= self.max_new_tokens:
            return StopReason.MAX_NEW_TOKENS
        return None

    def _finish(self, step: int, stop_reason: StopReason) -> SearchResult:
        bs = self.beam_set
        bs.collapse_to_best()
        n = bs.extract_common_prefix()
        prefix = bs.common_prefix(n)
        self.confirmed_tokens.extend(prefix)

        self._notify(step, n, prefix, last_call=True)

        best = bs.best()
        logger.info(
            f"Beam search done after {step} steps ({stop_reason.value}): "
            f"{len(self.confirmed_tokens)} tokens, best score {best.cumulative_log_prob:.4f}"
        )
        return SearchResult(
            tokens=list(self.confirmed_tokens),
            best_beam=best.view(),
            steps=step,
            stop_reason=stop_reason,
        )


def run_beam_search(
    oracle: ModelOracle,
    observer: Optional[Observer],
    width: int,
    start_position: int,
    max_new_tokens: int,
    *,
    eos_token_id: Optional[int] = None,
    fan_out: Optional[int] = None,
    stop_when_best_terminal: bool = False,
    renormalize: bool = False,
) -> List[int]:
    """Run a beam search and return the confirmed token stream."""
    driver = BeamSearchDriver(
        oracle,
        observer,
        width=width,
        start_position=start_position,
        max_new_tokens=max_new_tokens,
        eos_token_id=eos_token_id,
        fan_out=fan_out,
        stop_when_best_terminal=stop_when_best_terminal,
        renormalize=renormalize,
    )
    return driver.run().tokens
