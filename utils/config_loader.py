import yaml
import logging
from dataclasses import dataclass
from typing import Dict, Any, List, Optional

from core.errors import ConfigurationError

logger = logging.getLogger(__name__)

# --------------------------------------------------------------------------- #
#  Small config records – all simple dataclasses                              #
# --------------------------------------------------------------------------- #
@dataclass
class APIConfig:
    base_url: str
    api_key: str
    model_name: str
    timeout_seconds: int = 120
    max_context_tokens: Optional[int] = None  # prompt + generated; None = no client-side check


@dataclass
class SearchConfig:
    beam_width: int = 2
    max_new_tokens: int = 256
    fan_out: Optional[int] = None          # candidates per beam per step; None = beam_width
    eos_token_id: Optional[int] = None
    start_position: int = 0
    stop_when_best_terminal: bool = False
    renormalize: bool = False
    top_n_logprobs: Optional[int] = None   # logprobs asked from the API; None = fan_out

    def validate(self) -> None:
        for name in ("beam_width", "max_new_tokens"):
            val = getattr(self, name)
            if isinstance(val, bool) or not isinstance(val, int) or val < 1:
                raise ConfigurationError(f"search.{name} must be a positive integer, got {val!r}")
        for name in ("fan_out", "top_n_logprobs"):
            val = getattr(self, name)
            if val is not None and (isinstance(val, bool) or not isinstance(val, int) or val < 1):
                raise ConfigurationError(f"search.{name} must be a positive integer or null, got {val!r}")
        if isinstance(self.start_position, bool) or not isinstance(self.start_position, int) or self.start_position < 0:
            raise ConfigurationError(f"search.start_position must be >= 0, got {self.start_position!r}")

    @property
    def effective_fan_out(self) -> int:
        return self.fan_out or self.beam_width

    @property
    def effective_top_n(self) -> int:
        return self.top_n_logprobs or self.effective_fan_out


# --------------------------------------------------------------------------- #
#  Top-level wrapper – uses the small records above                           #
# --------------------------------------------------------------------------- #
class AppConfig:
    def __init__(self, data: Dict[str, Any]):
        api = data.get("api")
        self.api: Optional[APIConfig] = APIConfig(**api) if api else None
        self.search: SearchConfig = SearchConfig(**(data.get("search") or {}))
        self.search.validate()
        self.stop_sequences: List[List[int]] = [list(s) for s in data.get("stop_sequences") or []]
        self.logging_level: str = data.get("logging_level", "INFO")
        self.max_workers: int = data.get("max_workers", 1)  # default fallback


# --------------------------------------------------------------------------- #
#  Loader helper                                                              #
# --------------------------------------------------------------------------- #
def load_config(config_path: str) -> AppConfig:
    """
    Parse a YAML config file into an AppConfig instance.
    """
    try:
        with open(config_path, "r", encoding="utf-8") as f:
            cfg = yaml.safe_load(f) or {}
        logger.info(f"Configuration loaded from {config_path}")
        return AppConfig(cfg)
    except FileNotFoundError:
        logger.error(f"Config file '{config_path}' not found.")
        raise
    except yaml.YAMLError as e:
        logger.error(f"YAML parse error in '{config_path}': {e}")
        raise
    except Exception as e:
        logger.error(f"Error loading or validating config '{config_path}': {e}")
        raise


# --------------------------------------------------------------------------- #
#  Convenience: allow dict-style access (obj["field"]) on all records         #
# --------------------------------------------------------------------------- #
def _make_subscriptable(cls):
    def __getitem__(self, key):
        return getattr(self, key)
    cls.__getitem__ = __getitem__
    return cls


for _cls in (
    APIConfig,
    SearchConfig,
    AppConfig,
):
    _make_subscriptable(_cls)
