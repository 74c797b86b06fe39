"""
Dataset Loader Module

Scans a directory tree of ear images named `NNN_<anything>.<ext>`, where
NNN is the 3-digit subject id, decodes them to grayscale with OpenCV and
splits them per class into train/test sets.

Usage:
    from earcore.dataset import scan_dataset, load_image, stratified_split

    entries = scan_dataset("data/ears")
    train_idx, test_idx = stratified_split([e.label for e in entries], test_ratio=0.2)
    image = load_image(entries[train_idx[0]].path)
"""

import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Sequence, Tuple, Union

import cv2
import numpy as np

from earcore.exceptions import ImageLoadError
from earcore.image_view import GrayImage

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png"}
LABEL_PATTERN = re.compile(r"^(\d{3})_.*")


@dataclass(frozen=True)
class DatasetEntry:
    path: Path
    label: int


def parse_label(filename: str) -> int:
    """
    Subject id from a `NNN_*` filename.

    Returns:
        The integer id, or -1 if the name doesn't follow the pattern.
    """
    match = LABEL_PATTERN.match(filename)
    return int(match.group(1)) if match else -1


def scan_dataset(root: Union[str, Path]) -> List[DatasetEntry]:
    """
    Recursively collect labelled images under `root`, sorted by path.

    Files with other extensions or names without the id prefix are skipped.
    """
    root = Path(root)
    if not root.is_dir():
        raise ImageLoadError("Dataset directory does not exist", path=root)

    entries = []
    skipped = 0
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.suffix.lower() not in IMAGE_EXTENSIONS:
            continue
        label = parse_label(path.name)
        if label < 0:
            skipped += 1
            continue
        entries.append(DatasetEntry(path=path, label=label))

    if skipped:
        logger.warning(f"Skipped {skipped} images without an NNN_ prefix in {root}")
    n_classes = len({e.label for e in entries})
    logger.info(f"Found {len(entries)} images of {n_classes} subjects in {root}")
    return entries


def load_image(path: Union[str, Path]) -> GrayImage:
    """
    Decode an image file to 8-bit grayscale.

    Raises:
        ImageLoadError: Missing file or undecodable content.
    """
    path = Path(path)
    pixels = cv2.imread(str(path), cv2.IMREAD_GRAYSCALE)
    if pixels is None:
        raise ImageLoadError("Cannot decode image", path=path)
    return GrayImage(pixels, copy=False)


def stratified_split(
    labels: Sequence[int],
    test_ratio: float = 0.2,
    seed: int = 42,
) -> Tuple[List[int], List[int]]:
    """
    Per-class shuffled train/test split.

    Each class with at least two samples contributes round(n * test_ratio)
    test samples, clamped to [1, n - 1]. Singleton classes stay in train.

    Returns:
        (train_indices, test_indices), each sorted.
    """
    by_class: Dict[int, List[int]] = {}
    for i, label in enumerate(labels):
        by_class.setdefault(int(label), []).append(i)

    rng = np.random.default_rng(seed)
    train, test = [], []
    for label in sorted(by_class):
        idxs = np.array(by_class[label])
        rng.shuffle(idxs)
        n = len(idxs)
        if n < 2:
            logger.warning(f"Class {label} has {n} sample(s); keeping it in train only")
            train.extend(idxs.tolist())
            continue
        n_test = int(math.floor(n * test_ratio + 0.5))
        n_test = min(max(n_test, 1), n - 1)
        train.extend(idxs[:n - n_test].tolist())
        test.extend(idxs[n - n_test:].tolist())

    logger.info(f"Split: train={len(train)} test={len(test)} (test_ratio={test_ratio}, seed={seed})")
    return sorted(train), sorted(test)
