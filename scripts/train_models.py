"""
Offline training and threshold calibration.

Scans a dataset directory of `NNN_*.jpg` ear images, splits it per
subject into train/test, trains every model on the training split,
calibrates the verification threshold on the held-out split with the
template scorer, and writes the artefacts plus a threshold report.

Usage:
  python scripts/train_models.py --dataset-dir data/ears

  # Custom output locations and no plots
  python scripts/train_models.py --dataset-dir data/ears \
    --model-dir models --report-dir reports --no-plots
"""

import argparse
import json
import logging
import sys
from pathlib import Path

import numpy as np

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from earcore.calibration import ThresholdCalibrator, collect_scores, plot_calibration  # noqa: E402
from earcore.config import get_config, load_config  # noqa: E402
from earcore.dataset import load_image, scan_dataset, stratified_split  # noqa: E402
from earcore.model_store import ModelStore  # noqa: E402
from earcore.pipeline import BiometricPipeline, train_models  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Train ear biometric models and calibrate thresholds")
    parser.add_argument("--dataset-dir", required=True, help="Directory with NNN_*.jpg images")
    parser.add_argument("--model-dir", default=None, help="Output directory (default: storage.model_dir)")
    parser.add_argument("--report-dir", default=None, help="Report directory (default: storage.report_dir)")
    parser.add_argument("--config", default=None, help="Alternative config.yaml")
    parser.add_argument("--no-plots", action="store_true", help="Skip calibration plots")
    args = parser.parse_args()

    if args.config:
        config = load_config(args.config)
    else:
        config = get_config()

    storage = config.get("storage", {})
    calibration = config.get("calibration", {})
    model_dir = Path(args.model_dir or storage.get("model_dir", "models"))
    report_dir = Path(args.report_dir or storage.get("report_dir", "reports"))

    entries = scan_dataset(args.dataset_dir)
    if not entries:
        logger.error(f"No labelled images found in {args.dataset_dir}")
        return 1

    labels = [e.label for e in entries]
    train_idx, test_idx = stratified_split(
        labels,
        test_ratio=float(calibration.get("test_ratio", 0.2)),
        seed=int(calibration.get("split_seed", 42)),
    )

    store = ModelStore(model_dir, max_workers=config.get("runtime", {}).get("max_workers", 1))
    try:
        train_images = [load_image(entries[i].path) for i in train_idx]
        bundle = train_models(train_images, [labels[i] for i in train_idx], config, executor=store.executor)
        store.swap(bundle)
        store.save()

        if not test_idx:
            logger.warning("No held-out samples; skipping calibration")
            return 0

        pipeline = BiometricPipeline(store, config)
        test_embeddings = np.vstack([
            pipeline.embed(pipeline.extract_features(load_image(entries[i].path)), bundle)
            for i in test_idx
        ])
        genuine, impostor = collect_scores(test_embeddings, [labels[i] for i in test_idx], bundle.templates)
        result = ThresholdCalibrator(calibration).calibrate(genuine, impostor)
    finally:
        store.close()

    report_dir.mkdir(parents=True, exist_ok=True)
    result.write_csv(report_dir / "thresholds.csv")
    summary = {
        "eer": result.eer,
        "eer_threshold": result.eer_point.threshold,
        "auc": result.auc_score,
        "far_points": {f"{t:.2f}": p.threshold for t, p in result.far_points.items()},
        "genuine_mean": result.stats.genuine_mean,
        "impostor_mean": result.stats.impostor_mean,
        "separation": result.stats.separation,
    }
    with open(report_dir / "calibration.json", "w", encoding="utf-8") as f:
        json.dump(summary, f, indent=2)
    if not args.no_plots:
        plot_calibration(result, save_dir=str(report_dir), show=False)

    print(f"EER {result.eer:.4f} at threshold {result.eer_point.threshold:.4f} (AUC {result.auc_score:.4f})")
    print(f"Set verification.threshold in config.yaml to adopt it. Report: {report_dir}")
    return 0


if __name__ == "__main__":
    sys.exit(main())
