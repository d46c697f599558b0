"""Shared fixtures and test doubles."""

import io
import threading
import time
from datetime import datetime, timedelta

import numpy as np
import pytest
from PIL import Image

from skinscan.config import ModelConfig
from skinscan.errors import ModelLoadError
from skinscan.registry import ModelRegistry
from skinscan.results import PatientData, ScanResult
from skinscan.classifier import rank_predictions
from skinscan.preprocessing import image_to_data_url


class FakeModel:
    """Forward-pass double returning a fixed output and recording its inputs."""

    def __init__(self, output):
        self.output = np.asarray(output, dtype=np.float64).reshape(1, -1)
        self.calls = []
        self.closed = False

    def predict(self, batch):
        self.calls.append(np.array(batch, copy=True))
        return self.output.copy()

    def close(self):
        self.closed = True


class FakeLoader:
    """Model loader double with a per-path fetch counter."""

    def __init__(self, outputs, delay=0.0, failures=0, ready_delay=0.0):
        self.outputs = dict(outputs)
        self.delay = delay
        self.ready_delay = ready_delay
        self.failures = failures
        self.fetch_counts = {}
        self.models = {}
        self.started = threading.Event()
        self.backend_started = threading.Event()
        self._lock = threading.Lock()

    def ready(self):
        self.backend_started.set()
        if self.ready_delay:
            time.sleep(self.ready_delay)
        return "cpu"

    def load(self, path):
        with self._lock:
            self.fetch_counts[path] = self.fetch_counts.get(path, 0) + 1
        self.started.set()
        if self.delay:
            time.sleep(self.delay)
        if self.failures > 0:
            self.failures -= 1
            raise ModelLoadError(f"Simulated fetch failure for {path}")
        model = FakeModel(self.outputs[path])
        self.models[path] = model
        return model


SKIN = [0.3]
NOT_SKIN = [0.9]
CLASSIFIER_OUTPUT = [0.02, 0.03, 0.01, 0.01, 0.85, 0.05, 0.03]


@pytest.fixture
def model_config():
    return ModelConfig()


def make_loader(config, validator_output=SKIN, classifier_output=CLASSIFIER_OUTPUT, **kwargs):
    return FakeLoader(
        {
            config.validator_path: validator_output,
            config.classifier_path: classifier_output,
        },
        **kwargs,
    )


@pytest.fixture
def fake_loader(model_config):
    return make_loader(model_config)


@pytest.fixture
def registry(model_config, fake_loader):
    """Cold registry backed by fake models."""
    return ModelRegistry(model_config, loader=fake_loader)


@pytest.fixture
def loaded_registry(registry, fake_loader, model_config):
    """Registry with both models loaded and warm-up calls cleared."""
    registry.load_all()
    for model in fake_loader.models.values():
        model.calls.clear()
    return registry


def models_of(loader, config):
    return loader.models[config.validator_path], loader.models[config.classifier_path]


@pytest.fixture
def sample_image():
    """Create a sample RGB image for testing."""
    img_array = np.random.randint(0, 255, (224, 224, 3), dtype=np.uint8)
    return Image.fromarray(img_array, mode='RGB')


@pytest.fixture
def sample_image_large():
    """Create a larger, non-square sample image to test resizing."""
    img_array = np.random.randint(0, 255, (600, 450, 3), dtype=np.uint8)
    return Image.fromarray(img_array, mode='RGB')


def encode(image, fmt):
    buf = io.BytesIO()
    image.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture
def jpeg_bytes(sample_image_large):
    return encode(sample_image_large, 'JPEG')


@pytest.fixture
def png_bytes(sample_image):
    return encode(sample_image, 'PNG')


@pytest.fixture
def patient():
    return PatientData(
        first_name="Ayesha",
        patient_id="PT123ABC",
        username="drkhan",
        gender="F",
        age="42",
    )


@pytest.fixture
def make_scan(png_bytes, patient):
    """Factory for completed scans with a chosen top class and timestamp."""
    counter = iter(range(10_000))

    def factory(top_class=4, minutes_ago=0, scan_patient=None):
        probabilities = [0.01] * 7
        probabilities[top_class] = 0.94
        return ScanResult(
            id=f"scan_{next(counter)}",
            timestamp=datetime(2025, 3, 5, 14, 30) - timedelta(minutes=minutes_ago),
            patient=scan_patient or patient,
            image_data_url=image_to_data_url(png_bytes),
            is_valid_skin_image=True,
            predictions=rank_predictions(probabilities),
        )

    return factory


@pytest.fixture
def rejected_scan(png_bytes, patient):
    return ScanResult(
        id="scan_rejected",
        timestamp=datetime(2025, 3, 5, 14, 30),
        patient=patient,
        image_data_url=image_to_data_url(png_bytes),
        is_valid_skin_image=False,
    )
