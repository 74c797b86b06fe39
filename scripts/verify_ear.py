"""
Verify a claimed identity from one ear capture.

Usage:
  python scripts/verify_ear.py --image probe.jpg --claimed-id 12
  python scripts/verify_ear.py --image probe.jpg --claimed-id 12 --threshold 0.31
  python scripts/verify_ear.py --image probe.jpg --identify

Exit codes: 0 accepted, 2 rejected, 1 error.
"""

import argparse
import json
import logging
import sys
from dataclasses import asdict
from pathlib import Path

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from earcore.config import get_config  # noqa: E402
from earcore.dataset import load_image  # noqa: E402
from earcore.exceptions import EarBiometricsError  # noqa: E402
from earcore.model_store import ModelStore  # noqa: E402
from earcore.pipeline import BiometricPipeline  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Ear verification / identification")
    parser.add_argument("--image", required=True, help="Probe image")
    parser.add_argument("--claimed-id", type=int, default=None, help="Claimed identity (1:1)")
    parser.add_argument("--identify", action="store_true", help="1:N identification with the SVM")
    parser.add_argument("--threshold", type=float, default=None, help="Override verification.threshold")
    parser.add_argument("--model-dir", default=None, help="Model directory (default: storage.model_dir)")
    args = parser.parse_args()

    if args.claimed_id is None and not args.identify:
        parser.error("give --claimed-id or --identify")

    config = get_config()
    model_dir = args.model_dir or config.get("storage", {}).get("model_dir", "models")
    store = ModelStore(model_dir, max_workers=config.get("runtime", {}).get("max_workers", 1))
    try:
        store.load()
        pipeline = BiometricPipeline(store, config)
        image = load_image(args.image)
        if args.identify:
            print(json.dumps(asdict(pipeline.identify(image)), indent=2))
            return 0
        result = pipeline.verify(image, args.claimed_id, threshold=args.threshold)
    except EarBiometricsError as e:
        logger.error(f"Request failed: {e}")
        return 1
    finally:
        store.close()

    print(json.dumps(asdict(result), indent=2))
    if result.error is not None:
        return 1
    return 0 if result.accepted else 2


if __name__ == "__main__":
    sys.exit(main())
