"""
Configuration Management for the Biomarker Forest Plot Pipeline

Centralized settings for model fitting, cell formatting, forest layout,
parallel extraction and logging.

Usage:
    from config import CONFIG

    # Access config
    print(CONFIG.get('analysis.conf_level'))

    # Update config (runtime)
    CONFIG.update('forest.default_width', 40)

    # Get with default
    value = CONFIG.get('some.nested.key', default='default_value')
"""

import copy
import json
import os
import warnings
from pathlib import Path
from typing import Any, Dict, Optional


class ConfigManager:
    """
    Centralized configuration with hierarchical (dot-notation) key access.

    Supports:
    - Nested dictionary access with dot notation
    - Default values and fallbacks
    - Environment variable overrides (BMFOREST_<SECTION>_<KEY>)
    - Config validation
    - Runtime updates
    """

    def __init__(self, config_dict: Optional[Dict] = None):
        """
        Create a ConfigManager from `config_dict` (or the built-in defaults)
        and apply environment variable overrides.
        """
        self._config = config_dict or self._get_default_config()
        self._env_prefix = "BMFOREST_"
        self._load_env_overrides()

    @staticmethod
    def _get_default_config() -> Dict[str, Any]:
        """
        Provide the default nested configuration.

        Returns:
            Dict[str, Any]: sections 'analysis', 'format', 'forest',
            'performance' and 'logging'.
        """
        return {

            # ========== MODEL FITTING ==========
            "analysis": {
                "conf_level": 0.95,
                "pval_label": "p-value (Wald)",
                "response_definition": "x",  # 'x' or '1 - x'
                "logit_max_iter": 100,
            },

            # ========== CELL FORMATTING ==========
            "format": {
                "display_cap": 999.9,  # |value| above this shows as >999.9
                "estimate_digits": 2,
                "proportion_digits": 1,
                "pval_digits": 4,
                "na_string": "NA",
                "ci_separator": " - ",
            },

            # ========== FOREST LAYOUT ==========
            "forest": {
                "default_width": 30,  # forest panel width, character units
                "cell_padding": 2,
                "domain_margin": 0.04,  # fraction of the data span
                "n_ticks": 5,
                "row_height": 28,  # px per table row
                "char_width": 7,  # px per character unit
                "marker_size": 9,
                "font_size": 12,
                "renderer": None,  # plotly renderer name for fig.show(), None = plotly default
                "colors": {
                    "point": "#1E3A5F",
                    "whisker": "#6B7280",
                    "clip_marker": "#E74856",
                    "vline": "#1F2328",
                    "header": "#0F2440",
                    "text": "#1F2328",
                },
            },

            # ========== PARALLEL EXTRACTION ==========
            "performance": {
                "num_threads": 4,
                "parallel_min_biomarkers": 2,
            },

            # ========== LOGGING SETTINGS ==========
            "logging": {
                "enabled": True,
                "level": "INFO",  # DEBUG, INFO, WARNING, ERROR, CRITICAL
                "format": "[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
                "date_format": "%Y-%m-%d %H:%M:%S",

                # File Logging
                "file_enabled": False,
                "log_dir": "logs",
                "log_file": "biomarker_forest.log",
                "max_log_size": 10485760,  # 10MB in bytes
                "backup_count": 5,

                # Console Logging
                "console_enabled": True,
                "console_level": "INFO",

                # What to Log
                "log_analysis_operations": True,
                "log_performance": True,
            },
        }

    def _load_env_overrides(self) -> None:
        """
        Apply overrides from environment variables prefixed with BMFOREST_.

        BMFOREST_LOGGING_LEVEL=DEBUG becomes logging.level = "DEBUG": the first
        segment after the prefix is the section, the rest (joined with
        underscores) is the key. Numeric and boolean strings are coerced to
        the type of the value they replace.
        """
        for key, value in os.environ.items():
            if not key.startswith(self._env_prefix):
                continue

            parts = key[len(self._env_prefix):].lower().split("_")
            if len(parts) < 2:
                continue

            section = parts[0]
            key_name = "_".join(parts[1:])
            dotted = f"{section}.{key_name}"

            try:
                self.update(dotted, self._coerce(self.get(dotted), value))
            except (KeyError, ValueError, TypeError) as e:
                warnings.warn(f"Failed to set env override {key}={value}: {e}", stacklevel=2)

    @staticmethod
    def _coerce(current: Any, raw: str) -> Any:
        """Convert an environment string to the type of the current value."""
        if isinstance(current, bool):
            return raw.strip().lower() in ("1", "true", "yes", "on")
        if isinstance(current, int):
            return int(raw)
        if isinstance(current, float):
            return float(raw)
        return raw

    def get(self, key: str, default: Any = None) -> Any:
        """
        Retrieve a configuration value using a dot-separated key path.

        Returns `default` if any segment of the path is missing.
        """
        value = self._config
        for k in key.split("."):
            if isinstance(value, dict) and k in value:
                value = value[k]
            else:
                return default
        return value

    def update(self, key: str, value: Any) -> None:
        """
        Set an existing configuration value identified by a dot-separated path.

        Raises:
            KeyError: If any segment of the path does not exist.
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                raise KeyError(f"Config path '{'.'.join(keys[:-1])}' does not exist")
            config = config[k]

        final_key = keys[-1]
        if final_key not in config:
            raise KeyError(f"Config key '{key}' does not exist")

        config[final_key] = value

    def set_nested(self, key: str, value: Any, create: bool = False) -> None:
        """
        Set a value by dot path, optionally creating missing intermediate sections.
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                if create:
                    config[k] = {}
                else:
                    raise KeyError(f"Config path '{k}' does not exist")
            config = config[k]

        config[keys[-1]] = value

    def get_section(self, section: str) -> Dict[str, Any]:
        """Return a deep copy of a top-level configuration section."""
        result = self.get(section, {})
        return copy.deepcopy(result) if isinstance(result, dict) else result

    def to_dict(self) -> Dict[str, Any]:
        """Return a deep copy of the whole configuration."""
        return copy.deepcopy(self._config)

    def to_json(self, filepath: Optional[str] = None, pretty: bool = True) -> str:
        """
        Serialize the configuration to JSON, optionally writing it to `filepath`.
        """
        json_str = json.dumps(self._config, indent=2 if pretty else None)

        if filepath:
            Path(filepath).write_text(json_str)

        return json_str

    def validate(self) -> tuple[bool, list[str]]:
        """
        Check key configuration constraints.

        - `analysis.conf_level` strictly between 0 and 1
        - `format.display_cap` positive
        - `performance.num_threads` at least 1
        - `logging.level` a standard level name

        Returns:
            tuple: (is_valid, errors)
        """
        errors = []

        conf_level = self.get("analysis.conf_level")
        if conf_level is None or not (0 < conf_level < 1):
            errors.append("analysis.conf_level must be between 0 and 1")

        cap = self.get("format.display_cap")
        if cap is None or cap <= 0:
            errors.append("format.display_cap must be positive")

        threads = self.get("performance.num_threads")
        if threads is None or int(threads) < 1:
            errors.append("performance.num_threads must be >= 1")

        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if self.get("logging.level") not in valid_levels:
            errors.append(f"logging.level must be one of {valid_levels}")

        return len(errors) == 0, errors

    def __repr__(self) -> str:
        return f"ConfigManager({len(self._config)} sections)"


# Global config instance
CONFIG = ConfigManager()
