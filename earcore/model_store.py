"""
Model Store Module

Holds the complete set of trained artefacts (z-score, PCA, LDA, SVM,
templates and the embedding store) as one immutable ModelBundle and
publishes updates by swapping the whole bundle under a write lock.

Readers take a snapshot under the read lock and then work without any
lock; a concurrent enrollment never exposes a half-updated model.

Artefacts on disk (one directory):
- zscore_params.dat   z-score means/stdevs
- modelo_pca.dat      PCA mean + components
- modelo_lda.dat      LDA header, mean, components
- modelo_svm.svm      OVA SVM (binary)
- templates_k1.csv    one centroid per class
- embeddings.csv      enrolled embeddings, label in the last column

Before each commit the current artefacts are copied to
versions/<timestamp>/ so a failed write can be rolled back. Only the
newest `max_backups` snapshots are kept.

Usage:
    from earcore.model_store import ModelStore

    store = ModelStore("models", max_workers=4)
    store.load()
    bundle = store.snapshot()
"""

import logging
import shutil
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from earcore.exceptions import DimensionMismatchError, ModelLoadError
from earcore.matching.svm_ova import SVMModel, load_svm, save_svm
from earcore.matching.template_matcher import TemplateModel, load_templates, save_templates
from earcore.normalizer import ZScoreParams, load_zscore, save_zscore
from earcore.projection import LDAModel, PCAModel, load_lda, load_pca, save_lda, save_pca

logger = logging.getLogger(__name__)

ZSCORE_FILE = "zscore_params.dat"
PCA_FILE = "modelo_pca.dat"
LDA_FILE = "modelo_lda.dat"
SVM_FILE = "modelo_svm.svm"
TEMPLATES_FILE = "templates_k1.csv"
EMBEDDINGS_FILE = "embeddings.csv"
VERSIONS_DIR = "versions"
DEFAULT_MAX_BACKUPS = 10

ARTEFACT_FILES = (ZSCORE_FILE, PCA_FILE, LDA_FILE, SVM_FILE, TEMPLATES_FILE, EMBEDDINGS_FILE)


# ============================================================
# Read/write lock
# ============================================================

class ReadWriteLock:
    """
    Many concurrent readers or one writer.

    Writers take priority: once a writer is waiting, new readers block
    until it has finished.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    def acquire_read(self) -> None:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1

    def release_read(self) -> None:
        with self._cond:
            self._readers -= 1
            if self._readers == 0:
                self._cond.notify_all()

    def acquire_write(self) -> None:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True

    def release_write(self) -> None:
        with self._cond:
            self._writer = False
            self._cond.notify_all()

    @contextmanager
    def read_locked(self):
        self.acquire_read()
        try:
            yield
        finally:
            self.release_read()

    @contextmanager
    def write_locked(self):
        self.acquire_write()
        try:
            yield
        finally:
            self.release_write()


# ============================================================
# Bundle
# ============================================================

@dataclass(frozen=True, eq=False)
class ModelBundle:
    """
    Every artefact needed to embed, identify and verify.

    Attributes:
        zscore: Descriptor standardization.
        pca: PCA projection.
        lda: LDA projection (None when trained on a single class).
        svm: OVA SVM (None until at least one class is trained).
        templates: Per-class centroids in the final embedding space.
        embeddings: (N, D) enrolled embeddings.
        labels: (N,) their class ids.
        version: Incremented on every committed update.
    """

    zscore: ZScoreParams
    pca: PCAModel
    lda: Optional[LDAModel]
    svm: Optional[SVMModel]
    templates: TemplateModel
    embeddings: np.ndarray
    labels: np.ndarray
    version: int = 0

    def __post_init__(self):
        embeddings = np.array(self.embeddings, dtype=np.float64)
        labels = np.array(self.labels, dtype=np.int64).ravel()
        if embeddings.size == 0:
            embeddings = embeddings.reshape(0, self.embedding_dim)
        if embeddings.shape[0] != labels.size:
            raise DimensionMismatchError(embeddings.shape[0], labels.size, stage="bundle_labels")
        embeddings.setflags(write=False)
        labels.setflags(write=False)
        object.__setattr__(self, "embeddings", embeddings)
        object.__setattr__(self, "labels", labels)

    @property
    def embedding_dim(self) -> int:
        if self.lda is not None:
            return self.lda.n_components
        return self.pca.n_components

    def has_class(self, class_id: int) -> bool:
        return class_id in self.templates or bool(np.any(self.labels == class_id))

    def updated(self, **changes) -> "ModelBundle":
        """New bundle with `changes` applied and the version bumped."""
        return replace(self, version=self.version + 1, **changes)


def save_embeddings(path: Union[str, Path], embeddings: np.ndarray, labels: np.ndarray,
                    delimiter: str = ";") -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for row, label in zip(embeddings, labels):
            values = delimiter.join(repr(float(v)) for v in row)
            f.write(f"{values}{delimiter}{int(label)}\n")
    logger.debug(f"Saved {len(labels)} embeddings to {path}")


def load_embeddings(path: Union[str, Path], delimiter: str = ";") -> Tuple[np.ndarray, np.ndarray]:
    """
    Raises:
        ModelLoadError: Unreadable file, non-numeric values or ragged rows.
    """
    path = Path(path)
    rows, labels = [], []
    try:
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                parts = line.split(delimiter)
                try:
                    rows.append([float(v) for v in parts[:-1]])
                    labels.append(int(parts[-1]))
                except ValueError as e:
                    raise ModelLoadError(f"Malformed embedding row: {e}", path=path, line=lineno) from e
    except OSError as e:
        raise ModelLoadError(f"Cannot read embeddings: {e}", path=path) from e

    if len({len(r) for r in rows}) > 1:
        raise ModelLoadError("Embedding rows have different lengths", path=path)
    return np.array(rows, dtype=np.float64), np.array(labels, dtype=np.int64)


# ============================================================
# Store
# ============================================================

class ModelStore:
    """
    Thread-safe holder of the current ModelBundle.

    Args:
        directory: Artefact directory used by load/save/backup when no
                   explicit directory is given.
        bundle: Initial bundle (optional).
        max_workers: Size of the shared thread pool for per-class SVM
                     training and image filtering.
        max_backups: Number of versions/ snapshots kept; older ones are
                     deleted after each backup (0 keeps all).
    """

    def __init__(
        self,
        directory: Optional[Union[str, Path]] = None,
        bundle: Optional[ModelBundle] = None,
        max_workers: int = 1,
        max_backups: int = DEFAULT_MAX_BACKUPS,
    ):
        self.directory = Path(directory) if directory is not None else None
        self._bundle = bundle
        self._lock = ReadWriteLock()
        # Serializes read-modify-write cycles (enrollment) end to end
        self.update_mutex = threading.Lock()
        self.max_workers = max(1, int(max_workers))
        self.max_backups = max(0, int(max_backups))
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = threading.Lock()

    @classmethod
    def from_config(cls, storage: Optional[Dict[str, Any]] = None,
                    runtime: Optional[Dict[str, Any]] = None) -> "ModelStore":
        storage = storage or {}
        runtime = runtime or {}
        return cls(
            directory=storage.get("model_dir", "models"),
            max_workers=runtime.get("max_workers", 1),
            max_backups=storage.get("max_backups", DEFAULT_MAX_BACKUPS),
        )

    @property
    def executor(self) -> Optional[ThreadPoolExecutor]:
        """Shared pool, created on first use; None when max_workers == 1."""
        if self.max_workers <= 1:
            return None
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(max_workers=self.max_workers,
                                                    thread_name_prefix="earcore")
            return self._executor

    def close(self) -> None:
        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=True)
                self._executor = None

    def snapshot(self) -> Optional[ModelBundle]:
        with self._lock.read_locked():
            return self._bundle

    @contextmanager
    def reading(self):
        """Hold the read lock for one inference call and yield the current bundle."""
        with self._lock.read_locked():
            yield self._bundle

    def swap(self, bundle: ModelBundle) -> Optional[ModelBundle]:
        """Publish `bundle`; returns the previous one."""
        with self._lock.write_locked():
            previous = self._bundle
            self._bundle = bundle
        logger.info(f"Model bundle swapped to version {bundle.version}")
        return previous

    def _resolve(self, directory: Optional[Union[str, Path]]) -> Path:
        if directory is not None:
            return Path(directory)
        if self.directory is None:
            raise ValueError("No model directory configured")
        return self.directory

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def load(self, directory: Optional[Union[str, Path]] = None) -> ModelBundle:
        """
        Read every artefact and swap the result in.

        z-score, PCA and templates are required; LDA, SVM and the
        embedding store are optional.

        Raises:
            ModelLoadError: Missing required artefact or any malformed file.
        """
        d = self._resolve(directory)
        zscore = load_zscore(d / ZSCORE_FILE)
        pca = load_pca(d / PCA_FILE)
        templates = load_templates(d / TEMPLATES_FILE)

        lda = load_lda(d / LDA_FILE) if (d / LDA_FILE).exists() else None
        svm = load_svm(d / SVM_FILE) if (d / SVM_FILE).exists() else None
        if (d / EMBEDDINGS_FILE).exists():
            embeddings, labels = load_embeddings(d / EMBEDDINGS_FILE)
        else:
            logger.warning(f"No embedding store in {d}; starting empty")
            embeddings, labels = np.zeros((0, templates.dim)), np.zeros(0, dtype=np.int64)

        if lda is not None and lda.input_dim != pca.n_components:
            raise ModelLoadError("LDA input does not match PCA output", path=d / LDA_FILE,
                                 lda_input=lda.input_dim, pca_output=pca.n_components)

        bundle = ModelBundle(zscore=zscore, pca=pca, lda=lda, svm=svm, templates=templates,
                             embeddings=embeddings, labels=labels, version=0)
        if templates.n_classes and templates.dim != bundle.embedding_dim:
            raise ModelLoadError("Template dimension does not match the embedding space",
                                 path=d / TEMPLATES_FILE, expected=bundle.embedding_dim,
                                 actual=templates.dim)
        self.swap(bundle)
        logger.info(f"Loaded model bundle from {d}: {templates.n_classes} classes, "
                    f"{labels.size} stored embeddings")
        return bundle

    def save(self, directory: Optional[Union[str, Path]] = None,
             bundle: Optional[ModelBundle] = None) -> Path:
        """Write `bundle` (default: the current one) to disk."""
        d = self._resolve(directory)
        bundle = bundle if bundle is not None else self.snapshot()
        if bundle is None:
            raise ValueError("No model bundle to save")

        d.mkdir(parents=True, exist_ok=True)
        save_zscore(d / ZSCORE_FILE, bundle.zscore)
        save_pca(d / PCA_FILE, bundle.pca)
        if bundle.lda is not None:
            save_lda(d / LDA_FILE, bundle.lda)
        if bundle.svm is not None:
            save_svm(d / SVM_FILE, bundle.svm)
        save_templates(d / TEMPLATES_FILE, bundle.templates)
        save_embeddings(d / EMBEDDINGS_FILE, bundle.embeddings, bundle.labels)
        logger.info(f"Saved model bundle v{bundle.version} to {d}")
        return d

    def backup(self, directory: Optional[Union[str, Path]] = None) -> Path:
        """Copy the current artefacts into versions/<timestamp>/."""
        d = self._resolve(directory)
        version_dir = d / VERSIONS_DIR / datetime.now().strftime("%Y%m%d_%H%M%S_%f")
        version_dir.mkdir(parents=True, exist_ok=True)
        copied = 0
        for name in ARTEFACT_FILES:
            src = d / name
            if src.exists():
                shutil.copy2(src, version_dir / name)
                copied += 1
        logger.info(f"Backed up {copied} artefacts to {version_dir}")
        self.prune_backups(d)
        return version_dir

    def prune_backups(self, directory: Optional[Union[str, Path]] = None) -> int:
        """Delete all but the newest `max_backups` snapshots. Returns how many were removed."""
        if self.max_backups <= 0:
            return 0
        versions = self._resolve(directory) / VERSIONS_DIR
        if not versions.is_dir():
            return 0
        snapshots = sorted(p for p in versions.iterdir() if p.is_dir())
        stale = snapshots[:-self.max_backups]
        for old in stale:
            shutil.rmtree(old)
        if stale:
            logger.debug(f"Pruned {len(stale)} old backups from {versions}")
        return len(stale)

    def restore(self, version_dir: Union[str, Path],
                directory: Optional[Union[str, Path]] = None) -> None:
        """Copy artefacts from a backup back into the model directory."""
        d = self._resolve(directory)
        version_dir = Path(version_dir)
        for name in ARTEFACT_FILES:
            src = version_dir / name
            if src.exists():
                shutil.copy2(src, d / name)
            elif (d / name).exists():
                # Artefact did not exist before the failed commit
                (d / name).unlink()
        logger.warning(f"Restored artefacts from {version_dir}")
