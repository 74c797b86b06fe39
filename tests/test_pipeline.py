"""
Tests for the Biometric Pipeline module.

These tests verify that:
1. train_models builds a consistent bundle (templates, SVM, embedding store)
2. verify() accepts genuine claims and rejects wrong or unknown ones
3. verify() turns core errors into a rejected result instead of raising
4. identify() returns the enrolled class of a training capture

Run with: pytest tests/test_pipeline.py -v
"""

import numpy as np
import pytest

from earcore.exceptions import InputShapeError, ModelLoadError
from earcore.matching.template_matcher import build_templates
from earcore.model_store import ModelStore
from earcore.pipeline import BiometricPipeline, lda_target_components, train_models
from tests.conftest import SAMPLES_PER_CLASS, TEST_CONFIG, TRAIN_CLASSES, class_images


@pytest.fixture
def pipeline(trained_bundle):
    return BiometricPipeline(ModelStore(bundle=trained_bundle), {"verification": {"threshold": 0.25}})


class TestTraining:

    def test_bundle_contents(self, trained_bundle):
        n = len(TRAIN_CLASSES) * SAMPLES_PER_CLASS
        assert trained_bundle.version == 0
        assert trained_bundle.templates.classes.tolist() == list(TRAIN_CLASSES)
        assert sorted(trained_bundle.svm.classes.tolist()) == list(TRAIN_CLASSES)
        assert trained_bundle.embeddings.shape == (n, len(TRAIN_CLASSES) - 1)
        assert np.allclose(np.linalg.norm(trained_bundle.embeddings, axis=1), 1.0)

    def test_single_class_skips_lda(self):
        bundle = train_models(class_images(1), [1] * SAMPLES_PER_CLASS, TEST_CONFIG)
        assert bundle.lda is None
        assert bundle.embedding_dim == bundle.pca.n_components

    def test_geometric_augmentation(self):
        images = class_images(1, 2) + class_images(2, 2)
        config = {"projection": {"pca_components": 4, "augment": True}, "svm": {"epochs": 20}}
        bundle = train_models(images, [1, 1, 2, 2], config)
        assert bundle.embeddings.shape[0] == 4 * 5
        assert np.count_nonzero(bundle.labels == 2) == 10

    def test_label_count_mismatch(self):
        with pytest.raises(InputShapeError):
            train_models(class_images(1), [1, 1], TEST_CONFIG)


class TestLdaComponents:

    @pytest.mark.parametrize("requested, classes, expected", [
        (-1, 100, 40),
        (-1, 2, 1),
        (0, 1, 1),
        (10, 5, 4),
        (3, 1, 1),
        (2, 10, 2),
    ])
    def test_target(self, requested, classes, expected):
        assert lda_target_components(requested, classes) == expected

    def test_custom_cap(self):
        assert lda_target_components(-1, 100, cap=10) == 10


class TestVerify:

    def test_genuine_claim_accepted(self, pipeline):
        result = pipeline.verify(class_images(1)[0], claimed_id=1)
        assert result.accepted
        assert result.predicted_class == 1
        assert result.claimed_score >= 0.25
        assert result.error is None

    def test_wrong_claim_rejected(self, pipeline):
        result = pipeline.verify(class_images(1)[0], claimed_id=2)
        assert not result.accepted
        assert result.predicted_class == 1

    def test_unknown_claim_rejected(self, pipeline):
        result = pipeline.verify(class_images(3)[0], claimed_id=99)
        assert not result.accepted
        assert result.claimed_score == -1.0

    def test_threshold_override(self, pipeline):
        result = pipeline.verify(class_images(1)[0], claimed_id=1, threshold=1.5)
        assert not result.accepted
        assert result.threshold == 1.5

    def test_diagnostics(self, pipeline):
        result = pipeline.verify(class_images(2)[0], claimed_id=2)
        assert result.diagnostics.aspect_ratio == pytest.approx(1.0)
        assert result.diagnostics.aspect_ok
        assert 0.0 < result.diagnostics.roi_coverage < 100.0

    def test_wide_input_flagged_but_decided(self, pipeline):
        wide = np.hstack([class_images(1)[0], class_images(1)[0]])
        result = pipeline.verify(wide, claimed_id=1)
        assert not result.diagnostics.aspect_ok
        assert result.error is None

    def test_no_models_is_an_error_result(self):
        result = BiometricPipeline(ModelStore()).verify(class_images(1)[0], claimed_id=1)
        assert not result.accepted
        assert result.error["error_code"] == "MODEL_LOAD"
        assert result.diagnostics is None

    def test_empty_image_is_an_error_result(self, pipeline):
        result = pipeline.verify(np.zeros((0, 0), dtype=np.uint8), claimed_id=1)
        assert not result.accepted
        assert result.error["error_code"] == "INPUT_SHAPE"

    def test_template_dimension_skew_is_an_error_result(self, trained_bundle):
        skewed = trained_bundle.updated(templates=build_templates(np.ones((1, 7)), [1]))
        result = BiometricPipeline(ModelStore(bundle=skewed)).verify(class_images(1)[0], claimed_id=1)
        assert not result.accepted
        assert result.error["error_code"] == "DIM_MISMATCH"
        assert result.error["context"]["stage"] == "templates"


class TestIdentify:

    @pytest.mark.parametrize("class_id", TRAIN_CLASSES)
    def test_training_capture(self, pipeline, class_id):
        result = pipeline.identify(class_images(class_id)[1])
        assert result.predicted_class == class_id
        assert result.runner_up != class_id
        assert result.margin == pytest.approx(result.score1 - result.score2)

    def test_no_models(self):
        with pytest.raises(ModelLoadError):
            BiometricPipeline(ModelStore()).identify(class_images(1)[0])

    def test_embed_matches_stored_embedding(self, pipeline, trained_bundle):
        x = pipeline.embed(pipeline.extract_features(class_images(1)[0]))
        assert np.allclose(x, trained_bundle.embeddings[0])
