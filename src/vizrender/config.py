import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .models import VizRenderConfig

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")
CONFIG_ENV_VAR = "VIZRENDER_CONFIG"


def load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file, returning empty dict if not found."""
    if not path.exists():
        return {}
    with open(path, "r") as f:
        return yaml.safe_load(f) or {}


def merge_dicts(base: Dict, override: Dict) -> Dict:
    """Recursive merge of two dictionaries."""
    result = base.copy()
    for k, v in override.items():
        if k in result and isinstance(result[k], dict) and isinstance(v, dict):
            result[k] = merge_dicts(result[k], v)
        else:
            result[k] = v
    return result


def resolve_config(
    cli_args: Optional[Dict[str, Any]] = None, config_path: Optional[str] = None
) -> VizRenderConfig:
    """
    Resolve config: Default < Local < --config / $VIZRENDER_CONFIG < CLI.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
        FileNotFoundError: If an explicitly requested config file is missing
    """
    cli_args = cli_args or {}

    config_data = load_yaml(DEFAULT_CONFIG_PATH)
    config_data = merge_dicts(config_data, load_yaml(LOCAL_CONFIG_PATH))

    explicit = config_path or os.environ.get(CONFIG_ENV_VAR)
    if explicit:
        explicit_path = Path(explicit)
        if not explicit_path.exists():
            raise FileNotFoundError(f"Config file not found: {explicit_path}")
        logger.info("Loading config overrides from %s", explicit_path)
        config_data = merge_dicts(config_data, load_yaml(explicit_path))

    config = VizRenderConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
