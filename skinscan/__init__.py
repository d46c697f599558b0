"""Two-stage skin lesion inference: skin-image gate, then 7-class classifier."""

from skinscan.catalog import LESION_CLASSES, LesionClass, get_class
from skinscan.classifier import LesionClassifier
from skinscan.config import ModelConfig
from skinscan.errors import (
    InvalidImageError,
    ModelLoadError,
    ModelNotReadyError,
    SkinScanError,
    UnknownClassError,
)
from skinscan.pipeline import InferencePipeline, PipelineState
from skinscan.preprocessing import ImagePreprocessor
from skinscan.registry import ModelRegistry, ModelRole
from skinscan.results import PatientData, Prediction, ScanResult
from skinscan.validator import SkinImageValidator

__version__ = "1.0.0"
