from __future__ import annotations


class GenerationError(Exception):
    """Delegated text generation failed; the caller falls back to templates."""


class GenerationDisabled(GenerationError):
    pass


class GenerationTimeout(GenerationError):
    pass


class ForbiddenOutputError(GenerationError):
    pass


class LLMUnavailableError(Exception):
    """A generator was configured but its model or executable cannot be used."""


class SupervisorError(Exception):
    """The local inference server could not be started, probed or stopped."""
