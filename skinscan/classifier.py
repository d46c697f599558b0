"""Seven-way lesion classification and ranking."""

import logging
import time
from typing import Optional, Sequence, Tuple

import numpy as np

from skinscan.registry import ModelRegistry, ModelRole
from skinscan.results import Prediction
from skinscan.tensors import TensorArena, track

logger = logging.getLogger(__name__)


def rank_predictions(probabilities: Sequence[float]) -> Tuple[Prediction, ...]:
    """
    Pair each probability with its class id (= index) and sort descending.

    The sort is stable, so equal probabilities keep ascending class-id order.
    """
    predictions = [
        Prediction(class_id=class_id, probability=float(probability))
        for class_id, probability in enumerate(probabilities)
    ]
    predictions.sort(key=lambda p: p.probability, reverse=True)
    return tuple(predictions)


class LesionClassifier:
    """Runs the classification model over the normalized 224x224 encoding."""

    def __init__(self, registry: ModelRegistry):
        self.registry = registry

    def classify(self, tensor: np.ndarray, arena: Optional[TensorArena] = None) -> Tuple[Prediction, ...]:
        """
        Classify a lesion.

        Args:
            tensor: Classification tensor of shape (1, 224, 224, 3)
            arena: Arena owning the model output

        Returns:
            All seven predictions sorted by probability, highest first
        """
        handle = self.registry.get(ModelRole.CLASSIFIER)
        start_time = time.perf_counter()
        output = track(arena, handle.predict(tensor))
        inference_time = time.perf_counter() - start_time

        predictions = rank_predictions(output.reshape(-1).tolist())
        top = predictions[0]
        logger.info(
            f"Prediction complete in {inference_time*1000:.2f}ms. "
            f"Top prediction: {top.class_name} ({top.confidence:.1f}%)"
        )
        return predictions
