"""
Integration tests for the two-stage inference pipeline.
"""

import io

import numpy as np
import pytest
from PIL import Image

from skinscan.errors import InvalidImageError, ModelNotReadyError
from skinscan.pipeline import InferencePipeline, PipelineState
from skinscan.registry import ModelRegistry
from skinscan.results import ScanResult

from conftest import NOT_SKIN, make_loader, models_of


@pytest.fixture
def rejecting_setup(model_config):
    loader = make_loader(model_config, validator_output=NOT_SKIN)
    registry = ModelRegistry(model_config, loader=loader)
    registry.load_all()
    for model in loader.models.values():
        model.calls.clear()
    return registry, loader


class TestRejection:
    """A non-skin image never reaches the classifier."""

    def test_classifier_not_invoked(self, rejecting_setup, model_config, jpeg_bytes):
        registry, loader = rejecting_setup
        validator, classifier = models_of(loader, model_config)

        result = InferencePipeline(registry).run(jpeg_bytes)

        assert len(validator.calls) == 1
        assert len(classifier.calls) == 0
        assert result.is_valid_skin_image is False

    def test_rejected_result_has_no_predictions(self, rejecting_setup, jpeg_bytes, patient):
        registry, _ = rejecting_setup
        result = InferencePipeline(registry).run(jpeg_bytes, patient)

        assert result.predictions is None
        assert result.top_prediction is None
        assert result.patient == patient
        data = result.to_dict()
        assert 'predictions' not in data
        assert 'topPrediction' not in data

    def test_rejected_state_sequence(self, rejecting_setup, sample_image):
        registry, _ = rejecting_setup
        states = []
        InferencePipeline(registry).run(sample_image, on_state_change=states.append)

        assert states == [PipelineState.VALIDATING, PipelineState.REJECTED]


class TestCompletion:

    def test_end_to_end(self, loaded_registry, fake_loader, model_config, jpeg_bytes, patient):
        result = InferencePipeline(loaded_registry).run(jpeg_bytes, patient)

        assert isinstance(result, ScanResult)
        assert result.is_valid_skin_image is True
        assert len(result.predictions) == 7
        assert result.predictions[0].class_id == 4
        assert result.top_prediction.class_id == 4
        assert result.top_prediction.probability == pytest.approx(0.85)
        assert result.top_prediction == result.predictions[0]
        assert sum(p.probability for p in result.predictions) == pytest.approx(1.0, abs=1e-6)
        assert sorted(p.class_id for p in result.predictions) == list(range(7))

    def test_models_receive_expected_tensors(self, loaded_registry, fake_loader, model_config, sample_image):
        validator, classifier = models_of(fake_loader, model_config)
        InferencePipeline(loaded_registry).run(sample_image)

        assert validator.calls[0].shape == (1, 128, 128, 1)
        assert classifier.calls[0].shape == (1, 224, 224, 3)
        assert classifier.calls[0].min() >= -1.0

    def test_completed_state_sequence(self, loaded_registry, png_bytes):
        states = []
        InferencePipeline(loaded_registry).run(png_bytes, on_state_change=states.append)

        assert states == [
            PipelineState.VALIDATING,
            PipelineState.CLASSIFYING,
            PipelineState.COMPLETED,
        ]

    @pytest.mark.parametrize("kind,prefix", [
        ("jpeg", "data:image/jpeg;base64,"),
        ("png", "data:image/png;base64,"),
        ("pil", "data:image/png;base64,"),
        ("array", "data:image/png;base64,"),
    ])
    def test_accepts_several_image_sources(self, loaded_registry, jpeg_bytes, png_bytes,
                                           sample_image, kind, prefix):
        sources = {
            "jpeg": jpeg_bytes,
            "png": png_bytes,
            "pil": sample_image,
            "array": np.asarray(sample_image),
        }
        result = InferencePipeline(loaded_registry).run(sources[kind])

        assert result.image_data_url.startswith(prefix)
        assert result.is_valid_skin_image

    def test_multi_picture_jpeg_upload(self, loaded_registry):
        buf = io.BytesIO()
        Image.new('RGB', (64, 64), (150, 100, 90)).save(buf, format='MPO', save_all=True)

        result = InferencePipeline(loaded_registry).run(buf.getvalue())

        assert result.is_valid_skin_image
        assert result.image_data_url.startswith("data:image/jpeg;base64,")

    def test_each_run_gets_its_own_id(self, loaded_registry, sample_image):
        pipeline = InferencePipeline(loaded_registry)
        first = pipeline.run(sample_image)
        second = pipeline.run(sample_image)

        assert first.id != second.id

    def test_serialized_shape(self, loaded_registry, png_bytes, patient):
        result = InferencePipeline(loaded_registry).run(png_bytes, patient)
        data = result.to_dict()

        assert data['isValidSkinImage'] is True
        assert data['topPrediction'] == {'className': 'mel', 'probability': 0.85, 'classId': 4}
        assert data['patientData']['patientId'] == patient.patient_id
        assert ScanResult.from_dict(data) == result


class TestFailure:
    """Errors move the run to FAILED and propagate unchanged."""

    def test_invalid_image(self, loaded_registry, fake_loader, model_config):
        states = []
        validator, classifier = models_of(fake_loader, model_config)

        with pytest.raises(InvalidImageError):
            InferencePipeline(loaded_registry).run(b'not an image', on_state_change=states.append)

        assert states == [PipelineState.VALIDATING, PipelineState.FAILED]
        assert validator.calls == []
        assert classifier.calls == []

    @pytest.mark.parametrize("size", [(0, 0), (0, 16), (16, 0)])
    def test_zero_size_image(self, loaded_registry, fake_loader, model_config, size):
        states = []
        validator, _ = models_of(fake_loader, model_config)

        with pytest.raises(InvalidImageError):
            InferencePipeline(loaded_registry).run(Image.new('RGB', size), on_state_change=states.append)

        assert states == [PipelineState.VALIDATING, PipelineState.FAILED]
        assert validator.calls == []

    def test_models_not_loaded(self, registry, fake_loader, sample_image):
        states = []
        with pytest.raises(ModelNotReadyError):
            InferencePipeline(registry).run(sample_image, on_state_change=states.append)

        assert states[-1] is PipelineState.FAILED
        assert fake_loader.fetch_counts == {}

    def test_classifier_error_propagates(self, loaded_registry, fake_loader, model_config, sample_image):
        _, classifier = models_of(fake_loader, model_config)

        def explode(batch):
            raise RuntimeError("kernel crashed")

        classifier.predict = explode
        states = []
        with pytest.raises(RuntimeError, match="kernel crashed"):
            InferencePipeline(loaded_registry).run(sample_image, on_state_change=states.append)

        assert states == [
            PipelineState.VALIDATING,
            PipelineState.CLASSIFYING,
            PipelineState.FAILED,
        ]


class TestResourceScoping:
    """No intermediate array outlives its run."""

    def test_no_outstanding_allocations_after_many_runs(self, loaded_registry, sample_image):
        pipeline = InferencePipeline(loaded_registry)
        ledger = pipeline.ledger
        baseline = ledger.allocated

        for _ in range(100):
            pipeline.run(sample_image)
            assert ledger.outstanding == 0

        assert ledger.allocated > baseline

    def test_no_outstanding_allocations_after_rejections(self, rejecting_setup, sample_image):
        registry, _ = rejecting_setup
        pipeline = InferencePipeline(registry)

        for _ in range(100):
            pipeline.run(sample_image)
            assert pipeline.ledger.outstanding == 0

    def test_no_outstanding_allocations_after_failures(self, registry, sample_image):
        pipeline = InferencePipeline(registry)

        for _ in range(100):
            with pytest.raises(ModelNotReadyError):
                pipeline.run(sample_image)
            assert pipeline.ledger.outstanding == 0
        assert pipeline.ledger.allocated > 0
