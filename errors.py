"""Exception hierarchy for the sampled piano engine."""


class PianoError(Exception):
    """Base error for the piano engine."""


class InvalidConfigError(PianoError, ValueError):
    """Raised when a configuration is rejected before any loading begins."""


class SampleLoadError(PianoError):
    """Raised when a sample cannot be fetched or decoded."""

    def __init__(self, sample_id: str, reason: str = ""):
        self.sample_id = sample_id
        message = f"Could not load sample '{sample_id}'"
        if reason:
            message += f": {reason}"
        super().__init__(message)


class MalformedScoreError(PianoError):
    """Raised when a score or event sequence cannot be scheduled."""
