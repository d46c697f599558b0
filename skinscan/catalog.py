"""
Static catalog of the seven HAM10000 lesion classes.

Class ids match the output index of the classification model.
"""

from dataclasses import dataclass
from typing import Dict, List

from skinscan.errors import UnknownClassError


SEVERITY_LEVELS = ("low", "medium", "high")

RISK_MESSAGES = {
    "high": "HIGH RISK - Immediate medical consultation strongly recommended",
    "medium": "MODERATE RISK - Medical consultation recommended within 1-2 weeks",
    "low": "LOW RISK - Monitor and follow up if changes occur",
}


@dataclass(frozen=True)
class LesionClass:
    """Reference information for one lesion category."""
    id: int
    code: str
    name: str
    description: str
    causes: str
    risk_factors: str
    symptoms: str
    color: str
    severity: str

    @property
    def risk_message(self) -> str:
        return RISK_MESSAGES[self.severity]


LESION_CLASSES: Dict[int, LesionClass] = {
    0: LesionClass(
        id=0,
        code="akiec",
        name="Actinic Keratoses",
        description=(
            "Actinic keratoses describes lesions on the outer skin layer "
            "caused by too much exposure to ultraviolet rays."
        ),
        causes="Sun exposure, indoor tanning, extensive exposure to X-rays",
        risk_factors=(
            "People with fair skin, freckles, blonde or red hair and blue, "
            "green or gray eyes"
        ),
        symptoms=(
            "Typically occur on the face, lips, ears, bald scalp, shoulders, "
            "neck and back of the hands"
        ),
        color="#f59e0b",
        severity="medium",
    ),
    1: LesionClass(
        id=1,
        code="bcc",
        name="Basal Cell Carcinoma",
        description=(
            "Basal cell carcinoma is a cancer that grows on parts of your "
            "skin that get a lot of sun."
        ),
        causes="Combination of cumulative and intense, occasional sun exposure",
        risk_factors="Anyone with a history of sun exposure",
        symptoms="Typically occur on the sun-exposed areas of the body",
        color="#f97316",
        severity="medium",
    ),
    2: LesionClass(
        id=2,
        code="bkl",
        name="Benign Keratosis",
        description=(
            "Seborrheic keratoses are noncancerous skin growths that some "
            "people develop as they age."
        ),
        causes="The exact cause is not known",
        risk_factors="People over 50",
        symptoms="Typically occur on the face, chest, shoulders or back",
        color="#22c55e",
        severity="low",
    ),
    3: LesionClass(
        id=3,
        code="df",
        name="Dermatofibroma",
        description=(
            "Dermatofibromas are harmless round, red-brownish skin growths "
            "most commonly found on the arms and legs."
        ),
        causes="May be caused by an adverse reaction to a small injury, such as a bug bite",
        risk_factors="More frequent in women and people with compromised immune systems",
        symptoms=(
            "Can develop anywhere on the body but most often on lower legs, "
            "upper arms or upper back"
        ),
        color="#10b981",
        severity="low",
    ),
    4: LesionClass(
        id=4,
        code="mel",
        name="Melanoma",
        description=(
            "Melanoma is the most serious type of skin cancer, develops in "
            "melanocytes that produce melanin."
        ),
        causes="Exposure to ultraviolet (UV) radiation from sunlight or tanning lamps and beds",
        risk_factors=(
            "People with fair skin, freckles, blonde or red hair, multiple "
            "moles, family history"
        ),
        symptoms=(
            "Can appear anywhere on the body, changes in existing moles or "
            "new pigmented growths"
        ),
        color="#ef4444",
        severity="high",
    ),
    5: LesionClass(
        id=5,
        code="nv",
        name="Melanocytic Nevi",
        description=(
            "Melanocytic nevi are benign neoplasms composed of melanocytes, "
            "the pigment-producing cells."
        ),
        causes="Genetics, sunlight, hormones",
        risk_factors="People over 30",
        symptoms="Can appear anywhere on the body, but more often on trunk or limbs",
        color="#14b8a6",
        severity="low",
    ),
    6: LesionClass(
        id=6,
        code="vasc",
        name="Vascular Lesions",
        description=(
            "The most common vascular lesions are hemangiomas and angiomas - "
            "benign proliferations of blood vessels."
        ),
        causes="Genetics, sunlight, hormones",
        risk_factors="People over 30",
        symptoms="Can occur throughout the whole body, 60% located in head and neck region",
        color="#06b6d4",
        severity="low",
    ),
}

NUM_CLASSES = len(LESION_CLASSES)


def get_class(class_id: int) -> LesionClass:
    """
    Look up a catalog entry.

    Raises:
        UnknownClassError: if ``class_id`` is not one of 0-6
    """
    try:
        return LESION_CLASSES[class_id]
    except (KeyError, TypeError):
        raise UnknownClassError(f"Unknown lesion class id: {class_id!r}") from None


def class_name(class_id: int) -> str:
    """Canonical short code for a class id, e.g. ``4 -> 'mel'``."""
    return get_class(class_id).code


def class_codes() -> List[str]:
    return [LESION_CLASSES[i].code for i in range(NUM_CLASSES)]
