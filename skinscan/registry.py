"""
Model registry: load-once, warm-up and disposal of the two inference models.

A :class:`ModelRegistry` is constructed explicitly and handed to whoever
needs inference. Loading is guarded by one lock per model role; steady-state
reads of a ready handle take no lock.
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import numpy as np
import onnxruntime as ort

from skinscan.catalog import NUM_CLASSES
from skinscan.config import ModelConfig
from skinscan.errors import ModelLoadError, ModelNotReadyError
from skinscan.tensors import AllocationLedger, TensorArena

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, str], None]


class ModelRole(str, Enum):
    VALIDATOR = "validator"
    CLASSIFIER = "classifier"


class HandleState(Enum):
    ABSENT = "absent"
    LOADING = "loading"
    READY = "ready"


# ============================================================================
# ONNX RUNTIME BACKEND
# ============================================================================

class OnnxModel:
    """Forward-pass wrapper around an ONNX Runtime inference session."""

    def __init__(self, session: ort.InferenceSession):
        self.session = session
        self.input_name = session.get_inputs()[0].name

    def predict(self, batch: np.ndarray) -> np.ndarray:
        if self.session is None:
            raise ModelNotReadyError("Inference session has been closed")
        outputs = self.session.run(None, {self.input_name: batch})
        return outputs[0]

    def close(self) -> None:
        self.session = None


class OnnxModelLoader:
    """Loads ``.onnx`` artifacts from local paths."""

    def __init__(self, providers: Optional[List[str]] = None):
        self.providers = providers or ["CPUExecutionProvider"]

    def ready(self) -> str:
        """
        Check that at least one requested execution provider is available.

        Returns:
            Name of the device ONNX Runtime will run on
        """
        available = ort.get_available_providers()
        usable = [p for p in self.providers if p in available]
        if not usable:
            raise ModelLoadError(
                f"None of the execution providers {self.providers} are available "
                f"(available: {available})"
            )
        self.providers = usable
        return ort.get_device()

    def load(self, path: str) -> OnnxModel:
        if not os.path.exists(path):
            raise ModelLoadError(f"Model file not found: {path}")
        logger.info(f"Loading model from {path}")
        session = ort.InferenceSession(path, providers=self.providers)
        return OnnxModel(session)


# ============================================================================
# REGISTRY
# ============================================================================

@dataclass
class ModelHandle:
    """Cached reference to one loaded model."""
    role: ModelRole
    path: str
    input_shape: Tuple[int, ...]
    state: HandleState = HandleState.ABSENT
    model: Any = None
    load_seconds: Optional[float] = None

    @property
    def ready(self) -> bool:
        return self.state is HandleState.READY

    def predict(self, batch: np.ndarray) -> np.ndarray:
        model = self.model
        if model is None:
            raise ModelNotReadyError(f"{self.role.value} model not loaded")
        return np.asarray(model.predict(batch))


class ModelRegistry:
    """Owns the validator and classifier models for the lifetime of a process."""

    def __init__(
        self,
        config: Optional[ModelConfig] = None,
        loader: Optional[Any] = None,
        ledger: Optional[AllocationLedger] = None,
    ):
        """
        Initialize the registry. Nothing is loaded until requested.

        Args:
            config: Model configuration object
            loader: Object with ``ready()`` and ``load(path)``; defaults to ONNX Runtime
            ledger: Allocation ledger shared with inference runs
        """
        self.config = config or ModelConfig()
        self.loader = loader if loader is not None else OnnxModelLoader(self.config.providers)
        self.ledger = ledger if ledger is not None else AllocationLedger()
        self.backend: Optional[str] = None
        self._backend_lock = threading.Lock()
        self._handles: Dict[ModelRole, ModelHandle] = {
            ModelRole.VALIDATOR: ModelHandle(
                ModelRole.VALIDATOR,
                self.config.validator_path,
                self.config.validator_input_shape,
            ),
            ModelRole.CLASSIFIER: ModelHandle(
                ModelRole.CLASSIFIER,
                self.config.classifier_path,
                self.config.classifier_input_shape,
            ),
        }
        self._locks: Dict[ModelRole, threading.Lock] = {role: threading.Lock() for role in ModelRole}

    def initialize_backend(self) -> str:
        with self._backend_lock:
            if self.backend is None:
                try:
                    self.backend = self.loader.ready()
                except ModelLoadError:
                    raise
                except Exception as e:
                    raise ModelLoadError(f"Inference backend unavailable: {e}") from e
                logger.info(f"Inference backend ready ({self.backend})")
            return self.backend

    def state(self, role: Union[ModelRole, str]) -> HandleState:
        return self._handles[ModelRole(role)].state

    def ensure_loaded(self, role: Union[ModelRole, str]) -> ModelHandle:
        """
        Return a ready handle for ``role``, loading it if needed.

        Concurrent callers for a cold role block on the same load; the
        artifact is fetched once.

        Raises:
            ModelLoadError: artifact fetch, parse or warm-up failed
        """
        role = ModelRole(role)
        handle = self._handles[role]
        if handle.ready:
            return handle

        with self._locks[role]:
            if handle.ready:
                return handle
            handle.state = HandleState.LOADING
            start_time = time.perf_counter()
            try:
                self.initialize_backend()
                model = self._fetch(handle)
                self._warm_up(handle, model)
            except BaseException:
                handle.state = HandleState.ABSENT
                raise
            handle.model = model
            handle.load_seconds = time.perf_counter() - start_time
            handle.state = HandleState.READY
            logger.info(f"{role.value} model ready in {handle.load_seconds:.2f}s")
        return handle

    def load_all(self, on_progress: Optional[ProgressCallback] = None) -> None:
        """Load both models, reporting progress milestones from 0 to 100."""
        def report(value: int, status: str) -> None:
            logger.info(f"[{value:3d}%] {status}")
            if on_progress is not None:
                on_progress(value, status)

        self.initialize_backend()
        report(10, "Inference backend initialized")
        report(30, "Loading lesion classification model...")
        self.ensure_loaded(ModelRole.CLASSIFIER)
        report(60, "Loading image validation model...")
        self.ensure_loaded(ModelRole.VALIDATOR)
        report(100, "Models loaded successfully")

    def get(self, role: Union[ModelRole, str]) -> ModelHandle:
        """
        Return the ready handle for ``role`` without loading it.

        Waits for an in-flight load to finish.

        Raises:
            ModelNotReadyError: the model is not loaded and no load is in flight
        """
        role = ModelRole(role)
        handle = self._handles[role]
        if handle.state is HandleState.LOADING or self._locks[role].locked():
            with self._locks[role]:
                pass
        if not handle.ready:
            raise ModelNotReadyError(
                f"{role.value} model not loaded; call ensure_loaded() first"
            )
        return handle

    @property
    def is_ready(self) -> bool:
        return all(handle.ready for handle in self._handles.values())

    def dispose(self) -> None:
        """Release both models. A later ``ensure_loaded`` reloads from scratch."""
        for role in ModelRole:
            with self._locks[role]:
                handle = self._handles[role]
                model = handle.model
                handle.model = None
                handle.load_seconds = None
                handle.state = HandleState.ABSENT
                if model is not None and hasattr(model, "close"):
                    model.close()
        logger.info("Models disposed")

    def model_info(self) -> Dict[str, Any]:
        return {
            "is_initialized": self.is_ready,
            "backend": self.backend,
            "providers": list(self.config.providers),
            "models": {
                role.value: {
                    "state": handle.state.value,
                    "path": handle.path,
                    "input_shape": handle.input_shape,
                    "load_seconds": handle.load_seconds,
                }
                for role, handle in self._handles.items()
            },
            "memory": {
                "allocated": self.ledger.allocated,
                "released": self.ledger.released,
                "outstanding": self.ledger.outstanding,
            },
        }

    def _fetch(self, handle: ModelHandle) -> Any:
        try:
            return self.loader.load(handle.path)
        except ModelLoadError:
            logger.error(f"Error loading {handle.role.value} model from {handle.path}")
            raise
        except Exception as e:
            logger.error(f"Error loading {handle.role.value} model: {e}", exc_info=True)
            raise ModelLoadError(
                f"Failed to load {handle.role.value} model from {handle.path}: {e}"
            ) from e

    def _warm_up(self, handle: ModelHandle, model: Any) -> None:
        # One throwaway pass so kernel setup happens at load time.
        try:
            with TensorArena(self.ledger) as arena:
                dummy = arena.zeros(handle.input_shape)
                output = arena.track(np.asarray(model.predict(dummy)))
                size = output.size
        except Exception as e:
            if hasattr(model, "close"):
                model.close()
            raise ModelLoadError(f"Warm-up of {handle.role.value} model failed: {e}") from e

        expected = NUM_CLASSES if handle.role is ModelRole.CLASSIFIER else None
        if size == 0 or (expected is not None and size != expected):
            if hasattr(model, "close"):
                model.close()
            raise ModelLoadError(
                f"{handle.role.value} model produced {size} outputs"
                + (f", expected {expected}" if expected is not None else "")
            )
        logger.debug(f"Warm-up of {handle.role.value} model done, output size {size}")
