"""
Tests for model loading, warm-up, caching and disposal.
"""

import threading

import numpy as np
import pytest

from skinscan.config import ModelConfig
from skinscan.errors import ModelLoadError, ModelNotReadyError
from skinscan.registry import HandleState, ModelRegistry, ModelRole

from conftest import make_loader, models_of


class TestEnsureLoaded:

    def test_loads_once(self, registry, fake_loader, model_config):
        first = registry.ensure_loaded(ModelRole.CLASSIFIER)
        second = registry.ensure_loaded("classifier")

        assert first is second
        assert first.ready
        assert fake_loader.fetch_counts == {model_config.classifier_path: 1}

    def test_warm_up_uses_zero_tensor_of_role_shape(self, registry, fake_loader, model_config):
        registry.ensure_loaded(ModelRole.VALIDATOR)
        registry.ensure_loaded(ModelRole.CLASSIFIER)
        validator, classifier = models_of(fake_loader, model_config)

        assert len(validator.calls) == 1
        assert validator.calls[0].shape == (1, 128, 128, 1)
        assert not validator.calls[0].any()
        assert len(classifier.calls) == 1
        assert classifier.calls[0].shape == (1, 224, 224, 3)
        assert not classifier.calls[0].any()

    def test_warm_up_tensors_released(self, registry):
        registry.load_all()

        assert registry.ledger.allocated == 4
        assert registry.ledger.outstanding == 0

    def test_concurrent_first_use_fetches_once(self, model_config):
        loader = make_loader(model_config, delay=0.1)
        registry = ModelRegistry(model_config, loader=loader)
        barrier = threading.Barrier(2)
        handles, errors = [], []

        def load():
            barrier.wait()
            try:
                handles.append(registry.ensure_loaded(ModelRole.CLASSIFIER))
            except Exception as e:  # surfaced through the assertion below
                errors.append(e)

        threads = [threading.Thread(target=load) for _ in range(2)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(timeout=5)

        assert not errors
        assert len(handles) == 2
        assert handles[0] is handles[1]
        assert loader.fetch_counts[model_config.classifier_path] == 1

    def test_fetch_failure_leaves_role_absent_and_retry_succeeds(self, model_config):
        loader = make_loader(model_config, failures=1)
        registry = ModelRegistry(model_config, loader=loader)

        with pytest.raises(ModelLoadError):
            registry.ensure_loaded(ModelRole.VALIDATOR)
        assert registry.state(ModelRole.VALIDATOR) is HandleState.ABSENT

        handle = registry.ensure_loaded(ModelRole.VALIDATOR)
        assert handle.ready
        assert loader.fetch_counts[model_config.validator_path] == 2

    def test_unexpected_loader_error_wrapped(self, model_config):
        class BrokenLoader:
            def ready(self):
                return "cpu"

            def load(self, path):
                raise RuntimeError("corrupt protobuf")

        registry = ModelRegistry(model_config, loader=BrokenLoader())
        with pytest.raises(ModelLoadError, match="corrupt protobuf") as exc_info:
            registry.ensure_loaded(ModelRole.CLASSIFIER)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_backend_failure_leaves_role_absent(self, model_config):
        class NoBackendLoader:
            def ready(self):
                raise RuntimeError("no execution provider")

            def load(self, path):
                raise AssertionError("load must not run without a backend")

        registry = ModelRegistry(model_config, loader=NoBackendLoader())
        with pytest.raises(ModelLoadError, match="no execution provider"):
            registry.ensure_loaded(ModelRole.VALIDATOR)
        assert registry.state(ModelRole.VALIDATOR) is HandleState.ABSENT

    def test_classifier_with_wrong_output_size_rejected(self, model_config):
        loader = make_loader(model_config, classifier_output=[0.5, 0.5])
        registry = ModelRegistry(model_config, loader=loader)

        with pytest.raises(ModelLoadError, match="expected 7"):
            registry.ensure_loaded(ModelRole.CLASSIFIER)
        assert registry.state(ModelRole.CLASSIFIER) is HandleState.ABSENT
        assert loader.models[model_config.classifier_path].closed

    def test_missing_onnx_file_raises_model_load_error(self, tmp_path):
        config = ModelConfig(
            validator_path=str(tmp_path / "validator.onnx"),
            classifier_path=str(tmp_path / "classifier.onnx"),
        )
        registry = ModelRegistry(config)

        with pytest.raises(ModelLoadError, match="not found"):
            registry.ensure_loaded(ModelRole.VALIDATOR)

    def test_unknown_role_rejected(self, registry):
        with pytest.raises(ValueError):
            registry.ensure_loaded("segmenter")


class TestGet:

    def test_get_before_load_raises(self, registry):
        with pytest.raises(ModelNotReadyError):
            registry.get(ModelRole.VALIDATOR)

    def test_get_does_not_load(self, registry, fake_loader):
        with pytest.raises(ModelNotReadyError):
            registry.get(ModelRole.CLASSIFIER)
        assert fake_loader.fetch_counts == {}

    def test_get_waits_for_in_flight_load(self, model_config):
        loader = make_loader(model_config, delay=0.2)
        registry = ModelRegistry(model_config, loader=loader)
        thread = threading.Thread(target=registry.ensure_loaded, args=(ModelRole.VALIDATOR,))
        thread.start()
        assert loader.started.wait(timeout=5)

        handle = registry.get(ModelRole.VALIDATOR)
        thread.join(timeout=5)

        assert handle.ready
        assert loader.fetch_counts[model_config.validator_path] == 1

    def test_get_waits_while_backend_initializes(self, model_config):
        loader = make_loader(model_config, ready_delay=0.3)
        registry = ModelRegistry(model_config, loader=loader)
        thread = threading.Thread(target=registry.ensure_loaded, args=(ModelRole.VALIDATOR,))
        thread.start()
        assert loader.backend_started.wait(timeout=5)

        handle = registry.get(ModelRole.VALIDATOR)
        thread.join(timeout=5)

        assert handle.ready
        assert loader.fetch_counts[model_config.validator_path] == 1


class TestLoadAll:

    def test_progress_milestones(self, registry):
        events = []
        registry.load_all(on_progress=lambda value, status: events.append((value, status)))

        values = [value for value, _ in events]
        assert values == [10, 30, 60, 100]
        assert values == sorted(values)
        assert all(isinstance(status, str) and status for _, status in events)
        assert registry.is_ready

    def test_classifier_loaded_before_validator(self, registry, fake_loader, model_config):
        registry.load_all()
        assert list(fake_loader.fetch_counts) == [
            model_config.classifier_path,
            model_config.validator_path,
        ]


class TestDispose:

    def test_dispose_releases_and_allows_reload(self, loaded_registry, fake_loader, model_config):
        validator, classifier = models_of(fake_loader, model_config)
        loaded_registry.dispose()

        assert validator.closed and classifier.closed
        assert loaded_registry.state(ModelRole.VALIDATOR) is HandleState.ABSENT
        assert not loaded_registry.is_ready
        with pytest.raises(ModelNotReadyError):
            loaded_registry.get(ModelRole.CLASSIFIER)

        loaded_registry.ensure_loaded(ModelRole.CLASSIFIER)
        assert fake_loader.fetch_counts[model_config.classifier_path] == 2

    def test_handle_predict_after_dispose_raises(self, loaded_registry):
        handle = loaded_registry.get(ModelRole.VALIDATOR)
        loaded_registry.dispose()

        with pytest.raises(ModelNotReadyError):
            handle.predict(np.zeros((1, 128, 128, 1), dtype=np.float32))


def test_model_info(loaded_registry):
    info = loaded_registry.model_info()

    assert info["is_initialized"] is True
    assert info["backend"] == "cpu"
    assert info["providers"] == ["CPUExecutionProvider"]
    assert info["models"]["validator"]["state"] == "ready"
    assert info["models"]["classifier"]["input_shape"] == (1, 224, 224, 3)
    assert info["memory"]["outstanding"] == 0


def test_config_from_env(monkeypatch, tmp_path):
    monkeypatch.setenv("SKINSCAN_MODEL_DIR", str(tmp_path))
    monkeypatch.setenv("SKINSCAN_CLASSIFIER_MODEL", "/models/ham10000.onnx")
    config = ModelConfig.from_env()

    assert config.validator_path == str(tmp_path / "validator.onnx")
    assert config.classifier_path == "/models/ham10000.onnx"
