"""
Configuration for the pose graph backend.

Components take a plain configuration dictionary. Missing keys fall back to
DEFAULT_CONFIG; a YAML file can be used to override any subset of them.
"""
import copy
import logging
from pathlib import Path
from typing import Any, Dict, Optional, Union

import torch
import yaml

logger = logging.getLogger(__name__)

DEFAULT_CONFIG: Dict[str, Any] = {
    # Device used for poses and the optimizer ("cpu", "cuda", ...)
    "device": "cuda" if torch.cuda.is_available() else "cpu",
    # Levenberg-Marquardt settings
    "max_iterations": 100,
    "convergence_threshold": 1e-6,
    "initial_lambda": 1e-4,
    "lambda_factor": 10.0,
    # Optimize every N processed frames (0 disables)
    "update_every_n_frames": 10,
    # Optimize every T seconds while frames are arriving (0 disables)
    "update_every_seconds": 0.0,
    # Consumer wait time on an empty queue, in seconds
    "poll_interval": 0.01,
    # Process pending frames on stop() instead of discarding them
    "drain_on_shutdown": True,
    # Weight of the rigid edges linking clusters of the same frame
    "intra_frame_inliers": 100,
    # Where save_to_file() writes when no path is given
    "output_dir": ".",
    # "json" or "g2o"
    "save_format": "json",
}


def merge_config(config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Merge a user configuration over the defaults.

    Args:
        config: Partial configuration dictionary

    Returns:
        Complete configuration dictionary
    """
    merged = copy.deepcopy(DEFAULT_CONFIG)
    if not config:
        return merged

    unknown = set(config) - set(DEFAULT_CONFIG)
    if unknown:
        raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")

    merged.update(config)
    if merged["save_format"] not in ("json", "g2o"):
        raise ValueError(f"Unsupported save format: {merged['save_format']}")
    if merged["update_every_n_frames"] < 0 or merged["update_every_seconds"] < 0:
        raise ValueError("Update intervals must be non-negative")
    if merged["max_iterations"] < 1:
        raise ValueError("max_iterations must be at least 1")
    return merged


def load_config(path: Union[str, Path]) -> Dict[str, Any]:
    """Load a YAML configuration file and merge it over the defaults."""
    with open(path, "r") as f:
        data = yaml.safe_load(f) or {}

    if not isinstance(data, dict):
        raise ValueError(f"Configuration file {path} must contain a mapping")

    logger.info(f"Loaded pose graph configuration from {path}")
    return merge_config(data)
