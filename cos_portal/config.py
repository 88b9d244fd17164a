import copy
import logging
import os
from pathlib import Path
from typing import Dict, Any, Optional

import yaml

from .errors import ConfigError

DEFAULT_CONFIG_PATH = Path("config.yaml")

DEFAULT_CONFIG: Dict[str, Any] = {
    "log_level": "INFO",
    "admin_email": "",
    "ingestion": {
        "max_text_length": 10000,
        "min_pdf_text_length": 150,
        "ocr": {"enabled": True, "resolution_dpi": 300, "tesseract_path": None},
    },
    "classification": {
        "itinerary_filename_keywords": ["itinerary", "schedule", "event", "tour", "gig", "performance"],
        "itinerary_content_keywords": ["venue", "performance", "show date", "event date"],
        "details_filename_keywords": ["artist", "details", "cos", "sponsorship", "passport", "personal"],
        "details_content_keywords": ["passport number", "date of birth", "place of birth"],
    },
    "llm": {
        "active_provider": "openai",
        "temperature": 0.1,
        "max_tokens": 4000,
        "timeout_seconds": 90,
        "openai": {
            "base_url": "https://api.openai.com/v1/chat/completions",
            "model": "gpt-4o-mini",
        },
        "ollama": {"model": "llama3.1"},
    },
    "extraction": {
        "placeholder_on_failure": True,
    },
    "merge": {
        "model": "gpt-4o",
        "default_year": "2025",
    },
    "pipeline": {
        "max_retries": 2,
        "retry_delay_seconds": 3,
        "inter_document_delay_seconds": 2,
    },
    "tracker": {"track_placeholders": False},
    "database": {"url": "sqlite:///cos_portal.db"},
    "storage": {
        "backend": "supabase",
        "bucket": "visa-images",
        "max_file_size_mb": 10,
        "timeout_seconds": 30,
        "allowed_mime_types": [
            "image/jpeg",
            "image/png",
            "image/jpg",
            "application/pdf",
            "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
            "application/msword",
        ],
    },
    "gmail": {
        "api_base": "https://gmail.googleapis.com/gmail/v1/users/me",
        "max_results": 20,
        "timeout_seconds": 30,
        "sponsor_email": "",
        "sponsor_name": "",
        "sponsor_company": "",
        "sponsor_address": [],
        "sponsor_phone": "",
    },
    "reporting": {"output_directory": "output/"},
    "server": {"host": "0.0.0.0", "port": 8000},
}

# Environment variables that override values from the YAML file.
ENV_OVERRIDES = {
    "OPENAI_API_KEY": ("llm", "openai", "api_key"),
    "OPENAI_MODEL": ("llm", "openai", "model"),
    "SUPABASE_URL": ("storage", "supabase_url"),
    "SUPABASE_SERVICE_ROLE_KEY": ("storage", "service_role_key"),
    "DATABASE_URL": ("database", "url"),
    "COS_ADMIN_EMAIL": ("admin_email",),
}


def setup_logging(log_level: str = "INFO"):
    """Sets up the root logger for the application."""
    logging.basicConfig(
        level=log_level.upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(base.get(key), dict):
            _merge(base[key], value)
        else:
            base[key] = value
    return base


def _apply_env(config: Dict[str, Any]):
    for env_name, path in ENV_OVERRIDES.items():
        value = os.getenv(env_name)
        if not value:
            continue
        target = config
        for key in path[:-1]:
            target = target.setdefault(key, {})
        target[path[-1]] = value


def load_config(path: Optional[Path] = None) -> Dict[str, Any]:
    """
    Loads the YAML configuration, layered over the built-in defaults.

    Args:
        path: Path to the YAML file. Falls back to $COS_CONFIG, then config.yaml.

    Returns:
        The merged configuration dictionary.
    """
    logger = logging.getLogger(__name__)
    config_path = Path(path or os.getenv("COS_CONFIG") or DEFAULT_CONFIG_PATH)
    config = copy.deepcopy(DEFAULT_CONFIG)

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            file_config = yaml.safe_load(f) or {}
    except FileNotFoundError:
        logger.warning(f"Configuration file not found at {config_path}. Using defaults.")
        file_config = {}
    except yaml.YAMLError as e:
        raise ConfigError(f"Error parsing YAML configuration file {config_path}: {e}")

    if not isinstance(file_config, dict):
        raise ConfigError(f"Configuration file {config_path} must contain a mapping at the top level.")

    _merge(config, file_config)
    _apply_env(config)
    return config
