"""
Tests for the Enrollment Guard.

These tests verify that:
1. Existing identities and low-quality captures are rejected before any
   model work
2. The anti-duplicate vote rejects a second enrollment of a known ear
3. A clean request commits: SVM, templates and embedding store all gain
   the new class and the store publishes a new bundle version
4. A failed write rolls back and leaves the published bundle untouched

Run with: pytest tests/test_enrollment_guard.py -v
"""

import warnings
from pathlib import Path

import numpy as np
import pytest

from earcore import enrollment_guard
from earcore.enrollment_guard import (
    REASON_CLASS_EXISTS,
    REASON_DUPLICATE,
    REASON_INVALID_IMAGE,
    REASON_PERSIST,
    REASON_QUALITY,
    DuplicateDetected,
    DuplicateGuardConfig,
    EnrollmentGuard,
    EnrollmentState,
    QualityGateFailure,
    get_enrollment_guard,
    vote_duplicates,
)
from earcore.exceptions import ModelLoadError
from earcore.matching.svm_ova import SvmHyperParams
from earcore.matching.template_matcher import TemplateModel, build_templates
from earcore.model_store import TEMPLATES_FILE, VERSIONS_DIR, ModelStore
from earcore.quality import QcThresholds
from tests.conftest import class_images


def make_guard(qc_config=None, **enrollment):
    config = {"min_pass": 3, "augment": False, "margin_threshold": 0.2}
    config.update(enrollment)
    return EnrollmentGuard(
        config,
        qc_thresholds=QcThresholds.from_config(qc_config),
        svm_params=SvmHyperParams.warm_start(epochs=30),
    )


@pytest.fixture
def store(trained_bundle):
    return ModelStore(bundle=trained_bundle)


@pytest.fixture
def axis_templates():
    return build_templates(np.eye(3), np.array([1, 2, 3]))


# ============================================================
# Duplicate vote
# ============================================================

class TestVoteDuplicates:

    def test_consistent_confident_votes(self, axis_templates):
        vote = vote_duplicates(np.tile([1.0, 0.0, 0.0], (10, 1)), axis_templates)
        assert vote.is_duplicate
        assert vote.dominant_class == 1
        assert vote.confident == 10
        assert vote.consistency == 1.0

    def test_ambiguous_samples_do_not_vote(self, axis_templates):
        ambiguous = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
        vote = vote_duplicates(np.tile(ambiguous, (10, 1)), axis_templates)
        assert vote.confident == 0
        assert vote.dominant_class == -1
        assert not vote.is_duplicate

    def test_seven_of_ten_is_not_enough(self, axis_templates):
        # ceil(0.7 * 10) evaluates to 8 in floating point
        ambiguous = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
        E = np.vstack([np.tile([1.0, 0.0, 0.0], (7, 1)), np.tile(ambiguous, (3, 1))])
        vote = vote_duplicates(E, axis_templates)
        assert vote.votes_needed == 8
        assert vote.dominant_votes == 7
        assert not vote.is_duplicate

    def test_eight_of_ten_is_duplicate(self, axis_templates):
        ambiguous = np.array([1.0, 1.0, 0.0]) / np.sqrt(2.0)
        E = np.vstack([np.tile([1.0, 0.0, 0.0], (8, 1)), np.tile(ambiguous, (2, 1))])
        assert vote_duplicates(E, axis_templates).is_duplicate

    def test_vote_count_capped(self, axis_templates):
        vote = vote_duplicates(np.tile([0.0, 1.0, 0.0], (40, 1)), axis_templates)
        assert vote.n_samples == 25

    def test_single_enrolled_class_never_votes(self):
        templates = build_templates(np.array([[1.0, 0.0]]), np.array([4]))
        vote = vote_duplicates(np.tile([1.0, 0.0], (5, 1)), templates)
        assert vote.confident == 0
        assert not vote.is_duplicate

    def test_no_templates(self):
        vote = vote_duplicates(np.ones((3, 2)), TemplateModel.empty(2))
        assert vote.n_samples == 0
        assert not vote.is_duplicate

    def test_config_from_dict(self):
        config = DuplicateGuardConfig.from_config({"max_votes": 5, "consistency": 0.9})
        assert config.max_votes == 5
        assert config.margin_threshold == 0.489


# ============================================================
# Enrollment state machine
# ============================================================

class TestEnrollmentRejections:

    def test_existing_class(self, store, lenient_qc_config):
        decision = make_guard(lenient_qc_config).enroll(class_images(5), 1, store)
        assert decision.state is EnrollmentState.REJECTED
        assert decision.reason == REASON_CLASS_EXISTS
        assert decision.qc_results == []

    def test_quality_gate(self, store, trained_bundle):
        flat = [np.full((128, 128), 128, dtype=np.uint8) for _ in range(4)]
        decision = make_guard().enroll(flat, 50, store)
        assert decision.state is EnrollmentState.REJECTED
        assert decision.reason == REASON_QUALITY
        assert isinstance(decision.outcome, QualityGateFailure)
        assert decision.outcome.passed == 0
        assert decision.outcome.required == 3
        assert sorted(decision.outcome.failures) == [0, 1, 2, 3]
        assert store.snapshot() is trained_bundle

    def test_duplicate_of_enrolled_ear(self, store, trained_bundle, lenient_qc_config):
        decision = make_guard(lenient_qc_config).enroll(class_images(2), 99, store)
        assert decision.state is EnrollmentState.REJECTED
        assert decision.reason == REASON_DUPLICATE
        assert isinstance(decision.outcome, DuplicateDetected)
        assert decision.outcome.matched_class == 2
        assert store.snapshot() is trained_bundle

    def test_no_models_loaded(self, lenient_qc_config):
        with pytest.raises(ModelLoadError):
            make_guard(lenient_qc_config).enroll(class_images(7), 7, ModelStore())


class TestEnrollmentCommit:

    def test_commit_updates_every_model(self, store, trained_bundle, lenient_qc_config):
        decision = make_guard(lenient_qc_config, margin_threshold=10.0).enroll(class_images(7), 7, store)
        assert decision.state is EnrollmentState.COMMIT
        assert decision.accepted
        assert decision.reason == ""

        bundle = store.snapshot()
        assert bundle.version == trained_bundle.version + 1
        assert 7 in bundle.svm
        assert 7 in bundle.templates
        assert bundle.embeddings.shape[0] == trained_bundle.embeddings.shape[0] + 4
        assert np.count_nonzero(bundle.labels == 7) == 4
        # previous bundle untouched
        assert 7 not in trained_bundle.templates

    def test_photometric_variants_added(self, store, lenient_qc_config):
        guard = make_guard(lenient_qc_config, margin_threshold=10.0, augment=True)
        decision = guard.enroll(class_images(8), 8, store)
        assert decision.accepted
        assert decision.details["embeddings"] == 4 * 7

    def test_invalid_image_recorded(self, store, lenient_qc_config):
        images = class_images(9) + [np.zeros((0, 10), dtype=np.uint8)]
        decision = make_guard(lenient_qc_config, margin_threshold=10.0).enroll(images, 9, store)
        assert decision.accepted
        assert decision.qc_results[-1].reasons == [REASON_INVALID_IMAGE]
        assert decision.details["qc_passed"] == 4

    def test_qc_not_enforced(self, store):
        flat = [np.full((128, 128), 128, dtype=np.uint8) for _ in range(4)]
        decision = make_guard(qc_enforce=False, margin_threshold=10.0).enroll(flat, 60, store)
        assert decision.accepted
        assert not any(r.passed for r in decision.qc_results)

    def test_second_enrollment_of_same_id_rejected(self, store, lenient_qc_config):
        guard = make_guard(lenient_qc_config, margin_threshold=10.0)
        assert guard.enroll(class_images(7), 7, store).accepted
        assert guard.enroll(class_images(7), 7, store).reason == REASON_CLASS_EXISTS


class TestEnrollmentPersistence:

    def test_commit_written_with_backup(self, tmp_path, trained_bundle, lenient_qc_config):
        store = ModelStore(tmp_path, bundle=trained_bundle)
        store.save()
        decision = make_guard(lenient_qc_config, margin_threshold=10.0).enroll(class_images(7), 7, store)
        assert decision.accepted
        assert len(list((tmp_path / VERSIONS_DIR).iterdir())) == 1
        assert ModelStore(tmp_path).load().has_class(7)

    def test_failed_write_rolls_back(self, tmp_path, trained_bundle, lenient_qc_config, monkeypatch):
        store = ModelStore(tmp_path, bundle=trained_bundle)
        store.save()
        before = (tmp_path / TEMPLATES_FILE).read_text()

        def failing_save(directory=None, bundle=None):
            (tmp_path / TEMPLATES_FILE).write_text("partial")
            raise OSError("disk full")

        monkeypatch.setattr(store, "save", failing_save)
        decision = make_guard(lenient_qc_config, margin_threshold=10.0).enroll(class_images(7), 7, store)
        assert decision.state is EnrollmentState.REJECTED
        assert decision.reason == REASON_PERSIST
        assert store.snapshot() is trained_bundle
        assert (tmp_path / TEMPLATES_FILE).read_text() == before

    def test_persist_disabled(self, tmp_path, trained_bundle, lenient_qc_config):
        store = ModelStore(tmp_path, bundle=trained_bundle)
        decision = make_guard(lenient_qc_config, margin_threshold=10.0, persist=False).enroll(
            class_images(7), 7, store)
        assert decision.accepted
        assert not (tmp_path / TEMPLATES_FILE).exists()


class TestFactory:

    def test_from_full_config(self):
        guard = get_enrollment_guard({
            "enrollment": {"min_pass": 2, "max_votes": 10},
            "quality": {"std_min": 5.0},
            "svm_warm_start": {"epochs": 12},
            "canonicalizer": {},
            "descriptor": {},
        })
        assert guard.min_pass == 2
        assert guard.duplicate_config.max_votes == 10
        assert guard.qc_thresholds.std_min == 5.0
        assert guard.svm_params.epochs == 12
        assert guard.svm_params.learning_rate == 0.01


class TestModuleSource:

    def test_compiles_without_escape_warnings(self):
        source = Path(enrollment_guard.__file__).read_text(encoding="utf-8")
        with warnings.catch_warnings():
            warnings.simplefilter("error")
            compile(source, enrollment_guard.__file__, "exec")
