"""Configuration for model artifacts and uploads."""

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Tuple


MAX_UPLOAD_BYTES = 5 * 1024 * 1024
# Pillow reports JPEGs carrying the multi-picture extension as MPO.
ALLOWED_IMAGE_FORMATS = ("JPEG", "MPO", "PNG")


@dataclass
class ModelConfig:
    """Model configuration parameters."""
    validator_path: str = "model/validator.onnx"
    classifier_path: str = "model/classifier.onnx"
    validator_input_size: Tuple[int, int] = (128, 128)
    classifier_input_size: Tuple[int, int] = (224, 224)
    providers: List[str] = field(default_factory=lambda: ["CPUExecutionProvider"])
    max_upload_bytes: int = MAX_UPLOAD_BYTES

    @property
    def validator_input_shape(self) -> Tuple[int, int, int, int]:
        height, width = self.validator_input_size
        return (1, height, width, 1)

    @property
    def classifier_input_shape(self) -> Tuple[int, int, int, int]:
        height, width = self.classifier_input_size
        return (1, height, width, 3)

    @classmethod
    def from_env(cls) -> "ModelConfig":
        """
        Build a config, overriding artifact paths from the environment.

        ``SKINSCAN_MODEL_DIR`` relocates both default files;
        ``SKINSCAN_VALIDATOR_MODEL`` / ``SKINSCAN_CLASSIFIER_MODEL`` point
        at individual files and win over the directory.
        """
        config = cls()
        model_dir = os.environ.get("SKINSCAN_MODEL_DIR")
        if model_dir:
            config.validator_path = str(Path(model_dir) / Path(config.validator_path).name)
            config.classifier_path = str(Path(model_dir) / Path(config.classifier_path).name)
        config.validator_path = os.environ.get("SKINSCAN_VALIDATOR_MODEL", config.validator_path)
        config.classifier_path = os.environ.get("SKINSCAN_CLASSIFIER_MODEL", config.classifier_path)
        return config
