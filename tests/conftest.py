"""
Shared fixtures for the ear biometrics tests.

Synthetic "ears" are coarse random textures: each class has its own
16x16 grid of gray cells upscaled to 128x128, and each sample of a class
is the class texture shifted by a few pixels with a small brightness
offset. That gives LBP descriptors that are close within a class and
clearly different between classes.
"""

import sys
from pathlib import Path

import numpy as np
import pytest

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

from earcore.model_store import ModelBundle  # noqa: E402
from earcore.pipeline import train_models  # noqa: E402

TRAIN_CLASSES = (1, 2, 3, 4)
SAMPLES_PER_CLASS = 4

# Small, fast settings for training on synthetic data
TEST_CONFIG = {
    "canonicalizer": {},
    "descriptor": {},
    "projection": {"pca_components": 10, "augment": False},
    "svm": {"learning_rate": 0.05, "C": 1e-4, "tol": 1e-4, "epochs": 300, "min_epochs": 50, "patience": 30},
}


def make_ear_texture(class_seed: int, sample: int = 0, size: int = 128) -> np.ndarray:
    """Class texture rolled by `sample` pixels and brightened by 2 * sample."""
    coarse = np.random.default_rng(class_seed).integers(30, 220, size=(16, 16))
    base = np.kron(coarse, np.ones((size // 16, size // 16), dtype=np.int64))
    shifted = np.roll(base, sample, axis=1) + 2 * sample
    return np.clip(shifted, 0, 255).astype(np.uint8)


def class_images(class_id: int, n: int = SAMPLES_PER_CLASS):
    return [make_ear_texture(1000 + class_id, s) for s in range(n)]


@pytest.fixture(scope="session")
def training_set():
    images, labels = [], []
    for c in TRAIN_CLASSES:
        images.extend(class_images(c))
        labels.extend([c] * SAMPLES_PER_CLASS)
    return images, labels


@pytest.fixture(scope="session")
def trained_bundle(training_set) -> ModelBundle:
    """One bundle trained on the synthetic set, shared by every test (it is immutable)."""
    images, labels = training_set
    return train_models(images, labels, TEST_CONFIG)


@pytest.fixture
def lenient_qc_config():
    """QC limits that any non-empty canonical image passes."""
    return {
        "mean_min": 0.0,
        "mean_max": 255.0,
        "std_min": 0.0,
        "min_min": 0,
        "max_max": 255,
        "pct_dark_max": 100.0,
        "pct_bright_max": 100.0,
    }
