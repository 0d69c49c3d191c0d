#!/usr/bin/env python3
"""
Configuration loading and saving for the board tracker.

Provides the TrackerConfig class that loads tuning values from a JSON file
and falls back to the defaults in common/constants.py for anything the file
does not set.

Example file:

    {
        "localizer": {"alpha": 0.25, "max_jump": 40},
        "sensor": {"variance_threshold": 350},
        "debounce": {"settle_delay": 1.5},
        "engine": {"path": "/usr/games/stockfish", "difficulty": 7}
    }
"""

import copy
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, Optional

import common.constants as constants
from common.channel_logger import Logger
from common.errors import ConfigurationError

_log = Logger("vision", "config")


class TrackerConfig:
    """
    Loads and provides access to tracker configuration.

    Values are grouped in sections (camera, preprocess, localizer, sensor,
    debounce, engine). Each getter returns the fallback section updated with
    whatever the file provides.
    """

    DEFAULT_CONFIG_FILE = "boardwatch.json"

    # Environment variables for selecting an alternative configuration
    # - BOARDWATCH_CONFIG_FILE: explicit path to a JSON file
    # - BOARDWATCH_CONFIG_PROFILE: profile name resolved to profiles/{profile}.json
    ENV_CONFIG_FILE = "BOARDWATCH_CONFIG_FILE"
    ENV_CONFIG_PROFILE = "BOARDWATCH_CONFIG_PROFILE"

    FALLBACK_SETTINGS = {
        'camera': {
            'device': constants.CAMERA_DEVICE,
            'width': constants.FRAME_WIDTH,
            'height': constants.FRAME_HEIGHT,
            'frame_interval': constants.FRAME_INTERVAL,
        },
        'preprocess': {
            'blur_kernel': constants.BLUR_KERNEL,
            'canny_low': constants.CANNY_LOW,
            'canny_high': constants.CANNY_HIGH,
            'dilate_kernel': constants.DILATE_KERNEL,
            'warp_size': constants.WARP_SIZE,
        },
        'localizer': {
            'min_area_ratio': constants.MIN_BOARD_AREA_RATIO,
            'epsilon_ratio': constants.APPROX_EPSILON_RATIO,
            'diagonal_tolerance': constants.DIAGONAL_TOLERANCE,
            'alpha': constants.SMOOTHING_ALPHA,
            'max_jump': constants.MAX_CORNER_JUMP,
            'relax_after': constants.RELAX_AFTER_FRAMES,
            'relax_factor': constants.RELAXED_JUMP_FACTOR,
            'reset_after': constants.RESET_AFTER_FRAMES,
        },
        'sensor': {
            'inset_ratio': constants.SQUARE_INSET_RATIO,
            'diff_pixel_threshold': constants.DIFF_PIXEL_THRESHOLD,
            'diff_percent_cropped': constants.DIFF_OCCUPIED_PERCENT_CROPPED,
            'diff_percent_full': constants.DIFF_OCCUPIED_PERCENT_FULL,
            'use_center_crop': True,
            'clahe_clip_limit': constants.CLAHE_CLIP_LIMIT,
            'clahe_tile_grid': constants.CLAHE_TILE_GRID,
            'canny_low': constants.CANNY_LOW,
            'canny_high': constants.CANNY_HIGH,
            'variance_threshold': constants.VARIANCE_THRESHOLD,
            'edge_density_threshold': constants.EDGE_DENSITY_THRESHOLD,
            'joint_variance_threshold': constants.JOINT_VARIANCE_THRESHOLD,
            'joint_edge_density_threshold': constants.JOINT_EDGE_DENSITY_THRESHOLD,
        },
        'debounce': {
            'stability_threshold': constants.STABILITY_THRESHOLD,
            'settle_delay': constants.SETTLE_DELAY,
            'require_reference': False,
        },
        'engine': {
            'path': constants.PATH_TO_STOCKFISH,
            'difficulty': constants.DIFFICULTY,
            'depth_per_level': constants.DEPTH_PER_LEVEL,
        },
    }

    def __init__(self, config_file: Optional[str] = None):
        """
        Args:
            config_file: Path to configuration file. If None, uses default location.
        """
        self.config_file = config_file or self.DEFAULT_CONFIG_FILE
        self.config: Dict[str, Dict[str, Any]] = {}
        self.overrides: Dict[str, Dict[str, Any]] = {}
        self.using_fallback = True
        self.loaded_from: Optional[Path] = None
        self._load_config()

    def _candidate_paths(self):
        return [
            Path(self.config_file),                          # Absolute or relative to cwd
            Path(__file__).parent / self.config_file,        # Package directory
            Path(__file__).parent.parent / self.config_file, # Project root
        ]

    def _load_config(self) -> bool:
        """
        Load configuration from the first candidate path that exists.

        Returns:
            True if loaded from a file, False if using fallback.
        """
        for config_path in self._candidate_paths():
            if not config_path.exists():
                continue
            try:
                with open(config_path, 'r') as f:
                    data = json.load(f)
            except (OSError, json.JSONDecodeError) as e:
                _log.warn(f"Error loading config from {config_path}: {e}")
                continue
            if not isinstance(data, dict):
                _log.warn(f"Ignoring config {config_path}: top level is not an object")
                continue

            self.config = data
            self.using_fallback = False
            self.loaded_from = config_path
            _log.info(f"Loaded configuration from {config_path}")
            return True

        self.config = {}
        self.using_fallback = True
        self.loaded_from = None
        return False

    def reload(self) -> bool:
        """Reload configuration from file. Command-line overrides are kept."""
        return self._load_config()

    def get_profile_name(self) -> Optional[str]:
        """Profile name from the config path (profiles/laptop.json -> 'laptop')."""
        if self.config_file == self.DEFAULT_CONFIG_FILE:
            return None
        stem = Path(self.config_file).stem
        return stem or None

    def get_section(self, name: str) -> Dict[str, Any]:
        """
        Fallback values for a section, updated from file then from overrides.

        Raises:
            ConfigurationError: unknown section or an out-of-range value.
        """
        if name not in self.FALLBACK_SETTINGS:
            raise ConfigurationError(f"Unknown configuration section: {name}")

        section = copy.deepcopy(self.FALLBACK_SETTINGS[name])
        file_section = self.config.get(name, {})
        if isinstance(file_section, dict):
            for key, value in file_section.items():
                if key in section:
                    section[key] = value
                else:
                    _log.warn(f"Unknown key '{key}' in config section '{name}', ignored")
        section.update(self.overrides.get(name, {}))
        _validate(name, section)
        return section

    def set_override(self, section: str, key: str, value: Any) -> None:
        """Override a single value (used for command-line arguments)."""
        if section not in self.FALLBACK_SETTINGS or key not in self.FALLBACK_SETTINGS[section]:
            raise ConfigurationError(f"Unknown configuration value: {section}.{key}")
        self.overrides.setdefault(section, {})[key] = value

    def get_camera_settings(self) -> Dict[str, Any]:
        return self.get_section('camera')

    def get_preprocess_settings(self) -> Dict[str, Any]:
        return self.get_section('preprocess')

    def get_localizer_settings(self) -> Dict[str, Any]:
        return self.get_section('localizer')

    def get_sensor_settings(self) -> Dict[str, Any]:
        return self.get_section('sensor')

    def get_debounce_settings(self) -> Dict[str, Any]:
        return self.get_section('debounce')

    def get_engine_settings(self) -> Dict[str, Any]:
        return self.get_section('engine')

    def get_search_depth(self) -> int:
        """Engine search depth for the configured difficulty."""
        engine = self.get_engine_settings()
        return int(engine['difficulty']) * int(engine['depth_per_level'])

    def is_using_fallback(self) -> bool:
        return self.using_fallback

    def as_dict(self) -> Dict[str, Dict[str, Any]]:
        """Every section with file values and overrides applied."""
        return {name: self.get_section(name) for name in self.FALLBACK_SETTINGS}


def _validate(name: str, section: Dict[str, Any]) -> None:
    """Range checks for values that would silently break the pipeline."""
    if name == 'localizer':
        if not 0.0 < float(section['alpha']) <= 1.0:
            raise ConfigurationError(f"localizer.alpha must be in (0, 1], got {section['alpha']}")
        if float(section['max_jump']) <= 0:
            raise ConfigurationError("localizer.max_jump must be positive")
        if int(section['relax_after']) > int(section['reset_after']):
            raise ConfigurationError("localizer.relax_after must not exceed localizer.reset_after")
    elif name == 'sensor':
        if not 0.0 <= float(section['inset_ratio']) < 0.5:
            raise ConfigurationError("sensor.inset_ratio must be in [0, 0.5)")
    elif name == 'debounce':
        if int(section['stability_threshold']) < 1:
            raise ConfigurationError("debounce.stability_threshold must be at least 1")
        if float(section['settle_delay']) < 0:
            raise ConfigurationError("debounce.settle_delay must not be negative")
    elif name == 'engine':
        difficulty = int(section['difficulty'])
        if not constants.MIN_DIFFICULTY <= difficulty <= constants.MAX_DIFFICULTY:
            raise ConfigurationError(
                f"engine.difficulty must be between {constants.MIN_DIFFICULTY} "
                f"and {constants.MAX_DIFFICULTY}, got {difficulty}")
    elif name == 'preprocess':
        if int(section['blur_kernel']) % 2 == 0:
            raise ConfigurationError("preprocess.blur_kernel must be odd")


def save_config(config_data: Dict, output_path: Optional[str] = None) -> str:
    """
    Save a configuration dictionary to file.

    Args:
        config_data: Sections to save.
        output_path: Output file path. If None, uses the default location.

    Returns:
        Path to saved configuration file.
    """
    if output_path is None:
        output_path = Path(__file__).parent.parent / TrackerConfig.DEFAULT_CONFIG_FILE
    else:
        output_path = Path(output_path)

    output_path.parent.mkdir(parents=True, exist_ok=True)

    data = _convert_to_native_types(copy.deepcopy(config_data))
    data.setdefault('saved_info', {})['timestamp'] = datetime.now().isoformat()

    with open(output_path, 'w') as f:
        json.dump(data, f, indent=2)

    return str(output_path)


def _convert_to_native_types(obj: Any) -> Any:
    """Convert numpy types to native Python types for JSON serialisation."""
    import numpy as np

    if isinstance(obj, dict):
        return {k: _convert_to_native_types(v) for k, v in obj.items()}
    elif isinstance(obj, (list, tuple)):
        return [_convert_to_native_types(item) for item in obj]
    elif isinstance(obj, np.bool_):
        return bool(obj)
    elif isinstance(obj, np.integer):
        return int(obj)
    elif isinstance(obj, np.floating):
        return float(obj)
    elif isinstance(obj, np.ndarray):
        return _convert_to_native_types(obj.tolist())
    return obj


# Global configuration instance (lazy-loaded)
_global_config: Optional[TrackerConfig] = None


def _resolve_selected_config_file() -> str:
    """Config file selected through the environment, or the default name."""
    explicit = os.getenv(TrackerConfig.ENV_CONFIG_FILE)
    if explicit:
        return explicit

    profile = os.getenv(TrackerConfig.ENV_CONFIG_PROFILE)
    if profile:
        return str(Path("profiles") / f"{profile}.json")

    return TrackerConfig.DEFAULT_CONFIG_FILE


def get_config() -> TrackerConfig:
    """Get the global configuration instance."""
    global _global_config
    desired_file = _resolve_selected_config_file()
    if _global_config is None or _global_config.config_file != desired_file:
        _global_config = TrackerConfig(config_file=desired_file)
    return _global_config
