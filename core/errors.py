class BeamSearchError(Exception):
    """Base class for errors raised by the beam search engine."""


class OracleError(BeamSearchError):
    """The model oracle could not produce a next-token distribution."""

    def __init__(self, message: str, beam_index: int | None = None):
        super().__init__(message)
        self.beam_index = beam_index


class ConfigurationError(BeamSearchError, ValueError):
    """Invalid search parameters (raised before any step runs)."""


class ObserverError(BeamSearchError):
    """The observer raised, or asked for something the engine can't do."""
