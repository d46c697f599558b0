"""
Two-stage inference: skin-image validation, then lesion classification.

A run moves through ``IDLE -> VALIDATING -> (REJECTED | CLASSIFYING ->
COMPLETED)``; any error moves it to ``FAILED`` and is re-raised. The
classifier never runs for a rejected image.
"""

import logging
import uuid
from datetime import datetime
from enum import Enum
from typing import Callable, Optional, Union

import numpy as np
from PIL import Image

from skinscan.classifier import LesionClassifier
from skinscan.preprocessing import (
    ImagePreprocessor,
    encode_png,
    image_to_data_url,
)
from skinscan.registry import ModelRegistry
from skinscan.results import PatientData, ScanResult
from skinscan.tensors import AllocationLedger, TensorArena
from skinscan.validator import SkinImageValidator

logger = logging.getLogger(__name__)


class PipelineState(Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    REJECTED = "rejected"
    CLASSIFYING = "classifying"
    COMPLETED = "completed"
    FAILED = "failed"


StateCallback = Callable[[PipelineState], None]
Submission = Union[bytes, Image.Image, np.ndarray]


class InferencePipeline:
    """Sequences validator and classifier over one submitted image per run."""

    def __init__(
        self,
        registry: ModelRegistry,
        preprocessor: Optional[ImagePreprocessor] = None,
        validator: Optional[SkinImageValidator] = None,
        classifier: Optional[LesionClassifier] = None,
        ledger: Optional[AllocationLedger] = None,
    ):
        self.registry = registry
        self.preprocessor = preprocessor or ImagePreprocessor(registry.config)
        self.validator = validator or SkinImageValidator(registry)
        self.classifier = classifier or LesionClassifier(registry)
        self.ledger = ledger if ledger is not None else registry.ledger

    def run(
        self,
        image: Submission,
        patient: Optional[PatientData] = None,
        on_state_change: Optional[StateCallback] = None,
    ) -> ScanResult:
        """
        Validate and classify one image.

        Args:
            image: Uploaded file bytes, a PIL image or an HxWx3 pixel array
            patient: Patient metadata copied into the result
            on_state_change: Called with each state the run enters

        Returns:
            A completed or rejected ScanResult

        Raises:
            InvalidImageError, ModelNotReadyError: propagated unchanged
        """
        patient = patient or PatientData()
        state = PipelineState.IDLE

        def enter(new_state: PipelineState) -> None:
            nonlocal state
            logger.debug(f"Pipeline {state.value} -> {new_state.value}")
            state = new_state
            if on_state_change is not None:
                on_state_change(new_state)

        try:
            with TensorArena(self.ledger) as arena:
                enter(PipelineState.VALIDATING)
                source, data_url = self._decode(image)
                tensors = self.preprocessor.preprocess(source, arena)

                if not self.validator.is_skin_image(tensors.validation, arena):
                    enter(PipelineState.REJECTED)
                    return self._result(patient, data_url, is_valid=False)

                enter(PipelineState.CLASSIFYING)
                predictions = self.classifier.classify(tensors.classification, arena)
                result = self._result(patient, data_url, is_valid=True, predictions=predictions)
                enter(PipelineState.COMPLETED)
                return result
        except Exception as e:
            logger.error(f"Inference failed while {state.value}: {e}", exc_info=True)
            enter(PipelineState.FAILED)
            raise

    def _decode(self, image: Submission):
        if isinstance(image, (bytes, bytearray)):
            data = bytes(image)
            return self.preprocessor.load_image(data), image_to_data_url(data)
        # Dimensions are checked before re-encoding for storage.
        pixels = self.preprocessor.to_pixels(image)
        return pixels, image_to_data_url(encode_png(Image.fromarray(pixels.astype(np.uint8))), "PNG")

    @staticmethod
    def _result(patient, data_url, is_valid, predictions=None) -> ScanResult:
        return ScanResult(
            id=uuid.uuid4().hex,
            timestamp=datetime.now(),
            patient=patient,
            image_data_url=data_url,
            is_valid_skin_image=is_valid,
            predictions=predictions,
        )
