"""
Exception types raised across the interview session.

Users never see these directly; the session controller maps them to
status messages or spoken apologies.
"""

from typing import Optional


class InterviewError(Exception):
    """Base class for all interview session errors."""
    pass


class ValidationError(InterviewError):
    """Raised when session start parameters are missing or malformed."""
    pass


class ProviderError(InterviewError):
    """Raised when an external provider (STT, LLM, TTS) fails or times out."""

    def __init__(
        self,
        message: str,
        *,
        provider: str = "",
        operation: str = "",
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.provider = provider
        self.operation = operation
        self.cause = cause


class TransportError(InterviewError):
    """Raised when the client channel closed unexpectedly."""
    pass


class EmptyUtteranceError(InterviewError):
    """Raised when a detected utterance is too short to transcribe."""
    pass


class InvalidTransitionError(InterviewError):
    """Raised on an illegal session phase change."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Illegal phase transition: {current} -> {target}")
        self.current = current
        self.target = target
