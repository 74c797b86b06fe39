"""
Enroll a new identity from a folder of ear captures.

Runs the enrollment guard (image QC, anti-duplicate vote, commit) against
the models in the configured model directory and prints the decision.

Usage:
  python scripts/enroll_user.py --class-id 250 --images-dir captures/user250

Exit codes: 0 committed, 2 rejected, 1 error.
"""

import argparse
import json
import logging
import sys
from pathlib import Path

SCRIPT_DIR = Path(__file__).resolve().parent
PROJECT_ROOT = SCRIPT_DIR.parent
sys.path.insert(0, str(PROJECT_ROOT))

from earcore.config import get_config  # noqa: E402
from earcore.dataset import IMAGE_EXTENSIONS, load_image  # noqa: E402
from earcore.enrollment_guard import get_enrollment_guard  # noqa: E402
from earcore.exceptions import EarBiometricsError  # noqa: E402
from earcore.model_store import ModelStore  # noqa: E402

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


def main() -> int:
    parser = argparse.ArgumentParser(description="Enroll a new ear identity")
    parser.add_argument("--class-id", type=int, required=True, help="Identity to enroll")
    parser.add_argument("--images-dir", required=True, help="Directory with the captures")
    parser.add_argument("--model-dir", default=None, help="Model directory (default: storage.model_dir)")
    args = parser.parse_args()

    config = get_config()
    model_dir = args.model_dir or config.get("storage", {}).get("model_dir", "models")
    paths = sorted(p for p in Path(args.images_dir).iterdir() if p.suffix.lower() in IMAGE_EXTENSIONS)
    if not paths:
        logger.error(f"No images in {args.images_dir}")
        return 1

    store = ModelStore(model_dir, max_workers=config.get("runtime", {}).get("max_workers", 1))
    try:
        store.load()
        images = [load_image(p) for p in paths]
        decision = get_enrollment_guard(config).enroll(images, args.class_id, store)
    except EarBiometricsError as e:
        logger.error(f"Enrollment failed: {e}")
        print(json.dumps(e.to_dict(), indent=2))
        return 1
    finally:
        store.close()

    print(json.dumps({
        "state": decision.state.value,
        "class_id": decision.class_id,
        "reason": decision.reason,
        "qc_passed": sum(r.passed for r in decision.qc_results),
        "images": len(decision.qc_results),
        "details": decision.details,
    }, indent=2))
    return 0 if decision.accepted else 2


if __name__ == "__main__":
    sys.exit(main())
