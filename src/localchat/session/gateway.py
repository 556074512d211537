"""Blocking adapter between the session and a native inference backend."""
from __future__ import annotations

import logging
import os

from ..engines.base import GenerationRequest, InferenceBackend, LoadSpec, ModelHandle, TokenCallback
from ..errors import BackendGenerationError, BackendLoadError, ModelNotFound

logger = logging.getLogger(__name__)


class BackendGateway:
    def __init__(self, backend: InferenceBackend) -> None:
        self._backend = backend

    @property
    def backend(self) -> InferenceBackend:
        return self._backend

    def load_model(
        self,
        path: str,
        context_size: int,
        thread_count: int,
        use_gpu: bool,
        **options,
    ) -> ModelHandle:
        if not path or not os.path.exists(path):
            raise ModelNotFound(path)
        spec = LoadSpec(context_size=context_size, threads=thread_count, use_gpu=use_gpu, options=options)
        try:
            resource = self._backend.load(path, spec)
        except Exception as exc:
            raise BackendLoadError(path, f"{type(exc).__name__}: {exc}") from exc
        if resource is None:
            raise BackendLoadError(path, "backend returned no model")
        return ModelHandle(path=path, resource=resource)

    def unload_model(self, handle: ModelHandle | None) -> None:
        if handle is None or handle.released:
            return
        handle.released = True
        try:
            self._backend.unload(handle.resource)
        except Exception:
            logger.exception("Backend unload failed for %s", handle.path)
        finally:
            handle.resource = None

    def generate(self, handle: ModelHandle, request: GenerationRequest, on_token: TokenCallback) -> str:
        if handle.released:
            raise BackendGenerationError("Model handle was released")
        try:
            text = self._backend.generate(handle.resource, request, on_token)
        except Exception as exc:
            raise BackendGenerationError(str(exc) or type(exc).__name__) from exc
        return text or ""

    def request_cancel(self, handle: ModelHandle) -> None:
        if handle.released:
            return
        try:
            self._backend.cancel(handle.resource)
        except Exception:
            logger.exception("Backend cancel request failed for %s", handle.path)
