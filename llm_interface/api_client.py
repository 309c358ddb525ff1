import json
import logging
from typing import Dict, List, Sequence

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from core.models import APILogProbsResponse, Candidate
from utils.token_utils import parse_token_id

logger = logging.getLogger(__name__)

_SHARED_SESSIONS: Dict[str, requests.Session] = {}

class ApiClient:
    """
    OpenAI-compatible completions client.
    Manages HTTP sessions and API requests.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        model_name: str,
        timeout_seconds: int,
        pool_size: int = 20,
    ):
        if not base_url.endswith("/v1"):
            self.base_url = base_url.rstrip("/") + "/v1"
        else:
            self.base_url = base_url

        self.api_key = api_key
        self.model_name = model_name
        self.timeout_seconds = timeout_seconds
        self.completion_endpoint = f"{self.base_url}/completions"

        session_key = f"{self.base_url}_{pool_size}"
        if session_key not in _SHARED_SESSIONS:
            _SHARED_SESSIONS[session_key] = self._build_session(pool_size)
        self._session = _SHARED_SESSIONS[session_key]

        logger.info(
            f"ApiClient initialized for model '{model_name}' at '{self.completion_endpoint}', pool_size={pool_size}"
        )

    @staticmethod
    def _build_session(pool_size: int) -> requests.Session:
        session = requests.Session()
        retries = Retry(
            total=3,
            backoff_factor=0.5,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods={"POST"},
        )
        adapter = HTTPAdapter(
            pool_connections=pool_size,
            pool_maxsize=pool_size,
            max_retries=retries
        )
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def _make_request(self, payload: Dict) -> Dict:
        headers = {"Content-Type": "application/json"}
        if self.api_key and self.api_key.lower() != "empty": # Allow "empty" or "" for no key
            headers["Authorization"] = f"Bearer {self.api_key}"

        payload["model"] = self.model_name
        payload.setdefault("stream", False)

        logger.debug(f"API Request to {self.completion_endpoint}: Payload: {json.dumps(payload)[:500]}")

        try:
            response = self._session.post(
                self.completion_endpoint,
                headers=headers,
                json=payload,
                timeout=self.timeout_seconds,
            )
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout:
            logger.error(f"API request timed out after {self.timeout_seconds}s.")
            raise
        except requests.exceptions.HTTPError as e:
            logger.error(f"API HTTP error: {e}. Response: {e.response.text if e.response is not None else 'No response text'}")
            raise
        except requests.exceptions.RequestException as e:
            logger.error(f"API request failed: {e}")
            raise
        except json.JSONDecodeError as e:
            logger.error(f"Failed to decode API JSON response: {e}")
            raise

    def get_next_token_logprobs(
        self,
        prompt_token_ids: Sequence[int],
        top_n_logprobs: int,
    ) -> APILogProbsResponse:
        """
        Gets logprobs for the single next token after a token-id prompt.
        """
        payload = {
            "prompt": list(prompt_token_ids),
            "max_tokens": 1,
            "logprobs": top_n_logprobs,
            "temperature": 1.0,  # raw model distribution
            "return_tokens_as_token_ids": True,
        }

        api_response_data = self._make_request(payload)
        logger.debug(f"Logprobs API Raw Response: {json.dumps(api_response_data)[:1000]}")

        if not api_response_data.get("choices"):
            logger.warning("Logprobs API response contained no choices.")
            return APILogProbsResponse(logprobs=[])

        choice = api_response_data["choices"][0]

        logprobs_data = choice.get("logprobs")
        if not logprobs_data or not logprobs_data.get("top_logprobs"):
            logger.warning("No top_logprobs found in API response for logprobs request.")
            return APILogProbsResponse(logprobs=[])

        extracted = self._extract_top_logprobs(logprobs_data["top_logprobs"])
        if not extracted:
            logger.warning("Could not extract any logprobs from the API response.")

        return APILogProbsResponse(logprobs=extracted)

    @staticmethod
    def _to_candidate(token, logprob_val):
        try:
            return parse_token_id(token), float(logprob_val)
        except (TypeError, ValueError) as e:
            logger.warning(f"Skipping malformed logprob entry {token!r}: {logprob_val!r} ({e})")
            return None

    @classmethod
    def _extract_top_logprobs(cls, top_logprobs) -> List[Candidate]:
        # vLLM:   "top_logprobs": [ {"token_id:42": -0.1, ...} ]
        # OpenAI: "top_logprobs": [ [ {"token": "token_id:42", "logprob": -0.1}, ... ] ]
        entries = []
        first = top_logprobs
        if isinstance(top_logprobs, list):
            if not top_logprobs:
                return []
            first = top_logprobs[0]

        if isinstance(first, list):
            for alt in first:
                if isinstance(alt, dict) and "token" in alt and "logprob" in alt:
                    entries.append((alt["token"], alt["logprob"]))
        elif isinstance(first, dict):
            entries.extend(first.items())
        else:
            logger.warning(f"Unexpected format for top_logprobs content: {first!r}")

        extracted: List[Candidate] = []
        for token, logprob_val in entries:
            cand = cls._to_candidate(token, logprob_val)
            if cand is not None:
                extracted.append(cand)
        return extracted
