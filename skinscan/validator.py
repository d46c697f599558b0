"""Binary gate deciding whether an upload is a skin image at all."""

import logging
from typing import Optional

import numpy as np

from skinscan.registry import ModelRegistry, ModelRole
from skinscan.tensors import TensorArena, track

logger = logging.getLogger(__name__)

# The validator's first output is P(not skin); at or below this the image passes.
NOT_SKIN_THRESHOLD = 0.5


def passes_gate(not_skin_probability: float) -> bool:
    return not_skin_probability <= NOT_SKIN_THRESHOLD


class SkinImageValidator:
    """Runs the validation model over the grayscale 128x128 encoding."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def not_skin_probability(self, tensor: np.ndarray, arena: Optional[TensorArena] = None) -> float:
        handle = self.registry.get(ModelRole.VALIDATOR)
        output = track(arena, handle.predict(tensor))
        return float(output.reshape(-1)[0])

    def is_skin_image(self, tensor: np.ndarray, arena: Optional[TensorArena] = None) -> bool:
        """
        Args:
            tensor: Validation tensor of shape (1, 128, 128, 1)
            arena: Arena owning the model output

        Returns:
            True if the image is accepted as a skin image

        Raises:
            ModelNotReadyError: validator model not loaded
        """
        probability = self.not_skin_probability(tensor, arena)
        accepted = passes_gate(probability)
        logger.info(
            f"Skin validation: P(not skin)={probability:.4f} -> "
            f"{'accepted' if accepted else 'rejected'}"
        )
        return accepted
