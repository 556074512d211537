"""Error taxonomy for the inference session."""
from __future__ import annotations


class SessionError(Exception):
    """Base class for failures scoped to a single load or generate call."""


class ModelNotFound(SessionError):
    def __init__(self, path: str) -> None:
        super().__init__(f"Model file not found: {path}")
        self.path = path


class BackendLoadError(SessionError):
    def __init__(self, path: str, reason: str) -> None:
        super().__init__(f"Failed to load model {path}: {reason}")
        self.path = path


class BackendGenerationError(SessionError):
    pass


class NoModelLoaded(SessionError):
    def __init__(self) -> None:
        super().__init__("No model loaded")


class GenerationInProgress(SessionError):
    """Caller-retry signal: wait for or cancel the active generation first."""

    def __init__(self) -> None:
        super().__init__("Already generating")


class ModelLoadInProgress(SessionError):
    def __init__(self) -> None:
        super().__init__("A model is already loading")


class IllegalTransition(RuntimeError):
    pass
