"""Result records produced by an inference run."""

import math
import random
import string
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

from skinscan.catalog import LesionClass, get_class

_BASE36 = string.digits + string.ascii_uppercase


def _to_base36(value: int) -> str:
    digits = ""
    while True:
        value, remainder = divmod(value, 36)
        digits = _BASE36[remainder] + digits
        if value == 0:
            return digits


def generate_patient_id() -> str:
    """Patient identifier such as ``PTLX3K9Q2A7F4``."""
    timestamp = _to_base36(int(time.time() * 1000))
    suffix = "".join(random.choice(_BASE36) for _ in range(4))
    return f"PT{timestamp}{suffix}"


@dataclass(frozen=True)
class Prediction:
    """One row of classifier output."""
    class_id: int
    probability: float

    def __post_init__(self):
        get_class(self.class_id)
        # float32 softmax can overshoot 1.0 by a rounding step.
        if math.isnan(self.probability) or not -1e-6 <= self.probability <= 1 + 1e-6:
            raise ValueError(f"Probability out of range [0, 1]: {self.probability}")

    @property
    def class_name(self) -> str:
        return get_class(self.class_id).code

    @property
    def lesion_class(self) -> LesionClass:
        return get_class(self.class_id)

    @property
    def confidence(self) -> float:
        """Probability as a percentage."""
        return self.probability * 100

    def to_dict(self) -> Dict[str, Any]:
        return {
            "className": self.class_name,
            "probability": self.probability,
            "classId": self.class_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Prediction":
        return cls(class_id=int(data["classId"]), probability=float(data["probability"]))


@dataclass(frozen=True)
class PatientData:
    first_name: str = ""
    patient_id: str = ""
    username: str = ""
    gender: str = ""
    age: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "firstName": self.first_name,
            "patientId": self.patient_id,
            "username": self.username,
            "gender": self.gender,
            "age": self.age,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PatientData":
        return cls(
            first_name=data.get("firstName") or "",
            patient_id=data.get("patientId") or "",
            username=data.get("username") or "",
            gender=data.get("gender") or "",
            age="" if data.get("age") is None else str(data["age"]),
        )


@dataclass(frozen=True)
class ScanResult:
    """
    Outcome of one completed or rejected inference run.

    ``predictions`` is ``None`` for a rejected image; otherwise it holds all
    seven classes ordered by descending probability.
    """
    id: str
    timestamp: datetime
    patient: PatientData
    image_data_url: str
    is_valid_skin_image: bool
    predictions: Optional[Tuple[Prediction, ...]] = field(default=None)

    @property
    def top_prediction(self) -> Optional[Prediction]:
        if not self.predictions:
            return None
        return self.predictions[0]

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "id": self.id,
            "timestamp": self.timestamp.isoformat(),
            "patientData": self.patient.to_dict(),
            "imageDataUrl": self.image_data_url,
            "isValidSkinImage": self.is_valid_skin_image,
        }
        if self.predictions is not None:
            data["predictions"] = [p.to_dict() for p in self.predictions]
            data["topPrediction"] = self.top_prediction.to_dict()
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScanResult":
        timestamp = data["timestamp"]
        if isinstance(timestamp, str):
            timestamp = datetime.fromisoformat(timestamp)
        predictions = data.get("predictions")
        return cls(
            id=str(data["id"]),
            timestamp=timestamp,
            patient=PatientData.from_dict(data.get("patientData") or {}),
            image_data_url=data.get("imageDataUrl") or "",
            is_valid_skin_image=bool(data["isValidSkinImage"]),
            predictions=(
                tuple(Prediction.from_dict(p) for p in predictions)
                if predictions is not None else None
            ),
        )
