import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import List, Optional, Sequence

from requests.exceptions import RequestException

from core.errors import ConfigurationError, OracleError
from core.models import Candidate, OracleRequest, OracleResult
from core.oracle import ModelOracle
from llm_interface.api_client import ApiClient
from utils.config_loader import AppConfig

logger = logging.getLogger(__name__)

class ApiOracle(ModelOracle):
    """
    Model oracle backed by an OpenAI-compatible /v1/completions server.

    The server is stateless, so each request sends the prompt token ids
    followed by every token the beam has generated so far.
    """

    def __init__(
        self,
        api_client: ApiClient,
        prompt_token_ids: Sequence[int],
        top_n_logprobs: int,
        max_context_tokens: Optional[int] = None,
        max_workers: int = 1,
    ):
        self.api_client = api_client
        self.prompt_token_ids = list(prompt_token_ids)
        self.top_n_logprobs = top_n_logprobs
        self.max_context_tokens = max_context_tokens
        self.max_workers = max(1, max_workers)

        if max_context_tokens is not None and len(self.prompt_token_ids) >= max_context_tokens:
            raise OracleError(
                f"prompt too long ({len(self.prompt_token_ids)} tokens, max {max_context_tokens - 1})"
            )

    @classmethod
    def from_config(cls, config: AppConfig, prompt_token_ids: Sequence[int]) -> "ApiOracle":
        api = config.api
        if api is None:
            raise ConfigurationError("config has no 'api' section")
        client = ApiClient(
            base_url=api.base_url,
            api_key=api.api_key,
            model_name=api.model_name,
            timeout_seconds=api.timeout_seconds,
            pool_size=config.max_workers + 5,
        )
        return cls(
            client,
            prompt_token_ids,
            top_n_logprobs=config.search.effective_top_n,
            max_context_tokens=api.max_context_tokens,
            max_workers=config.max_workers,
        )

    def continue_sequence(self, request: OracleRequest) -> List[Candidate]:
        context = self.prompt_token_ids + list(request.tokens)
        if self.max_context_tokens is not None and len(context) + 1 > self.max_context_tokens:
            raise OracleError(
                f"context of {len(context)} tokens leaves no room in a "
                f"{self.max_context_tokens}-token window",
                beam_index=request.beam_index,
            )

        try:
            resp = self.api_client.get_next_token_logprobs(context, self.top_n_logprobs)
        except (RequestException, ValueError, TypeError) as e:
            raise OracleError(f"logprob request failed: {e}", beam_index=request.beam_index) from e

        if not resp.logprobs:
            raise OracleError("server returned no logprobs", beam_index=request.beam_index)
        return resp.logprobs

    def continue_many(self, requests: Sequence[OracleRequest]) -> List[OracleResult]:
        if self.max_workers == 1 or len(requests) <= 1:
            return super().continue_many(requests)

        # One RPC per live beam; every result is in before we return
        results = {}
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(requests))) as pool:
            futures = {pool.submit(self.continue_sequence, req): req for req in requests}
            for fut in as_completed(futures):
                req = futures[fut]
                try:
                    results[req.beam_index] = OracleResult(req.beam_index, list(fut.result()))
                except OracleError as e:
                    logger.warning(f"Oracle failed for beam {req.beam_index}: {e}")
                    results[req.beam_index] = OracleResult(req.beam_index, error=e)

        return [results[req.beam_index] for req in requests]
