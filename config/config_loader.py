"""
config_loader.py
-----------------
Singleton config loader. Reads config.yaml once and caches it.
All detection layers access thresholds through this, never hardcoded values.

The file location can be overridden per call or with the
RECURRING_CONFIG_PATH environment variable.
"""

import os
import yaml
from typing import Any, Dict


_CONFIG_CACHE: Dict[str, Any] = {}

CONFIG_PATH_ENV = "RECURRING_CONFIG_PATH"


def load_config(config_path: str | None = None) -> Dict[str, Any]:
    """
    Load and cache the YAML configuration file.

    Args:
        config_path: Path to config.yaml. Defaults to $RECURRING_CONFIG_PATH,
            then to config.yaml next to this file.

    Returns:
        Full config dictionary.
    """
    global _CONFIG_CACHE

    if _CONFIG_CACHE:
        return _CONFIG_CACHE

    if config_path is None:
        config_path = os.environ.get(CONFIG_PATH_ENV) or os.path.join(
            os.path.dirname(__file__), "config.yaml"
        )

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, "r") as f:
        _CONFIG_CACHE = yaml.safe_load(f)

    return _CONFIG_CACHE


def get_recurring_detection_config() -> Dict[str, Any]:
    """Returns the recurring_detection block (clustering + frequency bands)."""
    return load_config()["recurring_detection"]


def get_confidence_scoring_config() -> Dict[str, Any]:
    return load_config()["confidence_scoring"]


def get_confidence_tiers() -> Dict[str, Dict[str, float]]:
    """Returns confidence tier boundaries, highest tier first."""
    return load_config()["confidence_tiers"]


def get_classification_config() -> Dict[str, Any]:
    """Returns the transaction-type taxonomy (categories + keywords per type)."""
    return load_config()["classification"]


def get_bill_projection_config() -> Dict[str, Any]:
    return load_config()["bill_projection"]


def get_merchant_registry_config() -> Dict[str, Any]:
    return load_config()["merchant_registry"]


def get_frequency_period_days(frequency: str) -> int:
    """
    Returns the nominal period in days for a frequency name.

    Raises:
        KeyError: If the frequency has no configured band.
    """
    bands = get_recurring_detection_config()["frequency_bands"]
    if frequency not in bands:
        raise KeyError(
            f"No frequency band for '{frequency}'. "
            f"Available: {list(bands.keys())}"
        )
    return bands[frequency]["period_days"]


def reset_config() -> None:
    """Clears cached config. Useful for testing."""
    global _CONFIG_CACHE
    _CONFIG_CACHE = {}
