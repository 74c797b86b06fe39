"""
Configuration Management Module

Loads config.yaml from the project root once and hands out plain dicts.
Modules never read the file themselves; factories such as
get_canonicalizer() and get_enrollment_guard() fall back to this loader
only when no config dict is passed in.

Usage:
    from earcore.config import get_config, get_section
    config = get_config()
    quality = get_section("quality")
"""

import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

logger = logging.getLogger(__name__)

_config_instance: Optional[Dict[str, Any]] = None

SECTIONS = (
    "canonicalizer",
    "descriptor",
    "projection",
    "svm",
    "svm_warm_start",
    "quality",
    "enrollment",
    "verification",
    "calibration",
    "storage",
    "runtime",
)


def get_project_root() -> Path:
    """
    Find the directory holding config.yaml by walking up from this file.

    Raises:
        FileNotFoundError: If no parent directory contains config.yaml.
    """
    current_dir = Path(__file__).resolve().parent
    while current_dir != current_dir.parent:
        if (current_dir / "config.yaml").exists():
            return current_dir
        current_dir = current_dir.parent

    raise FileNotFoundError(
        "config.yaml not found above earcore/; run from a checkout of the project "
        "or pass an explicit path to load_config()"
    )


def load_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load configuration from a YAML file.

    Args:
        config_path: Path to the file; defaults to <project root>/config.yaml.

    Returns:
        Dict of sections. Missing known sections are filled with {}.

    Raises:
        FileNotFoundError: If the file doesn't exist.
        yaml.YAMLError: If the file is not valid YAML.
    """
    if config_path is None:
        config_path = get_project_root() / "config.yaml"
    else:
        config_path = Path(config_path)

    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r", encoding="utf-8") as f:
        config = yaml.safe_load(f) or {}

    for section in SECTIONS:
        if config.get(section) is None:
            config[section] = {}

    logger.debug(f"Loaded config from {config_path}: {list(config.keys())}")
    return config


def get_config(reload: bool = False) -> Dict[str, Any]:
    """
    Get the configuration singleton.

    Args:
        reload: Force re-reading config.yaml.
    """
    global _config_instance

    if _config_instance is None or reload:
        _config_instance = load_config()

    return _config_instance


def get_section(section_name: str) -> Dict[str, Any]:
    """
    Get one top-level section.

    Raises:
        KeyError: If the section doesn't exist.
    """
    config = get_config()

    if section_name not in config:
        raise KeyError(
            f"Configuration section '{section_name}' not found. "
            f"Available sections: {list(config.keys())}"
        )

    return config[section_name]


def get_canonicalizer_config() -> Dict[str, Any]:
    """Canonicalizer settings, with runtime.max_workers as the pool size default."""
    section = dict(get_section("canonicalizer"))
    section.setdefault("max_workers", get_runtime_config().get("max_workers", 1))
    return section


def get_descriptor_config() -> Dict[str, Any]:
    return get_section("descriptor")


def get_projection_config() -> Dict[str, Any]:
    return get_section("projection")


def get_svm_config() -> Dict[str, Any]:
    return get_section("svm")


def get_svm_warm_start_config() -> Dict[str, Any]:
    return get_section("svm_warm_start")


def get_quality_config() -> Dict[str, Any]:
    return get_section("quality")


def get_enrollment_config() -> Dict[str, Any]:
    return get_section("enrollment")


def get_verification_config() -> Dict[str, Any]:
    return get_section("verification")


def get_calibration_config() -> Dict[str, Any]:
    return get_section("calibration")


def get_storage_config() -> Dict[str, Any]:
    return get_section("storage")


def get_runtime_config() -> Dict[str, Any]:
    return get_section("runtime")


if __name__ == "__main__":
    config = get_config()
    print(f"Sections: {list(config.keys())}")
    print(f"Verification threshold: {get_verification_config().get('threshold')}")
