# config.py
import copy
import json
import os

from prompts import SUMMARY_MODES

DEFAULT_CONFIG_FILENAME = "config.json"
DEFAULT_CONFIG_DATA = {
  "models": {"text_model": "gemma:2b", "vision_model": "llava:latest"},
  "ollama_host": "http://localhost:11434",
  "generation_parameters": {"temperature": 0.4, "num_predict": 70, "max_text_chars": 2000},
  "naming": {"max_chars": 40, "language": "English", "custom_prompt": None, "keep_original_name": False},
  "video_processing": {
    "frames_to_analyze": 10,
    "video_summary": False,
    "summary_mode": "standard",
    "summary_interval": 30,
    "summary_max_frames": None
  },
  "processing": {"include_subdirectories": False, "max_concurrent_files": 3, "skip_metadata": False}
}


class ConfigError(ValueError):
    """Raised when configuration values are out of range."""


def merge_defaults(config, defaults=DEFAULT_CONFIG_DATA):
    """Fills keys missing from config with defaults, one level of sections deep."""
    for key, value in defaults.items():
        if key not in config:
            config[key] = copy.deepcopy(value)
        elif isinstance(value, dict) and isinstance(config[key], dict):
            for sub_key, sub_value in value.items():
                config[key].setdefault(sub_key, copy.deepcopy(sub_value))
    return config


def load_config(filename=DEFAULT_CONFIG_FILENAME):
    """Loads configuration from a JSON file, using defaults for missing keys."""
    if os.path.exists(filename):
        try:
            with open(filename, 'r') as f:
                config = json.load(f)
            if not isinstance(config, dict):
                raise ValueError("top level must be a JSON object")
            merge_defaults(config)
        except (OSError, ValueError) as e:
            print(f"Error loading {filename}: {e}. Using default config.")
            config = copy.deepcopy(DEFAULT_CONFIG_DATA)
    else:
        print(f"Config file {filename} not found. Creating with default values.")
        config = copy.deepcopy(DEFAULT_CONFIG_DATA)
        save_config(config, filename)
    return config


def save_config(config, filename=DEFAULT_CONFIG_FILENAME):
    """Saves the configuration to a JSON file."""
    try:
        with open(filename, 'w') as f:
            json.dump(config, f, indent=2)
        print(f"Saved configuration to {filename}")
    except OSError as e:
        print(f"Error saving config to {filename}: {e}")


def _check_int(errors, name, value, low, high=None, allow_none=False):
    if value is None and allow_none:
        return
    if isinstance(value, bool) or not isinstance(value, int):
        errors.append(f"{name} must be an integer")
    elif value < low or (high is not None and value > high):
        errors.append(f"{name} must be between {low} and {high}" if high is not None else f"{name} must be >= {low}")


def validate_config(config):
    """Checks value ranges and raises ConfigError listing every problem found."""
    errors = []
    models = config["models"]
    if not models.get("text_model") and not models.get("vision_model"):
        errors.append("at least one of models.text_model and models.vision_model must be set")
    if not str(config.get("ollama_host") or "").startswith(("http://", "https://")):
        errors.append("ollama_host must be an http(s) URL")

    gen = config["generation_parameters"]
    temperature = gen.get("temperature")
    if not isinstance(temperature, (int, float)) or not 0 <= temperature <= 2:
        errors.append("generation_parameters.temperature must be between 0 and 2")
    _check_int(errors, "generation_parameters.num_predict", gen.get("num_predict"), 1)
    _check_int(errors, "generation_parameters.max_text_chars", gen.get("max_text_chars"), 1)

    _check_int(errors, "naming.max_chars", config["naming"].get("max_chars"), 10, 100)

    video = config["video_processing"]
    _check_int(errors, "video_processing.frames_to_analyze", video.get("frames_to_analyze"), 0, 30)
    if video.get("summary_mode") not in SUMMARY_MODES:
        errors.append(f"video_processing.summary_mode must be one of: {', '.join(SUMMARY_MODES)}")
    interval = video.get("summary_interval")
    if isinstance(interval, bool) or not isinstance(interval, (int, float)) or interval <= 0:
        errors.append("video_processing.summary_interval must be a positive number")
    _check_int(errors, "video_processing.summary_max_frames", video.get("summary_max_frames"), 1, allow_none=True)

    _check_int(errors, "processing.max_concurrent_files", config["processing"].get("max_concurrent_files"), 1, 16)

    if errors:
        raise ConfigError("Configuration validation failed: " + "; ".join(errors))
    return config
