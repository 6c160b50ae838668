import yaml
from pathlib import Path
from typing import Any, Dict

from .models import UpscaleQueueConfig

DEFAULT_CONFIG_PATH = Path("config/default.yaml")
LOCAL_CONFIG_PATH = Path("config/local.yaml")


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
    cli_args: Dict[str, Any] = None,
    default_path: Path = DEFAULT_CONFIG_PATH,
    local_path: Path = LOCAL_CONFIG_PATH,
) -> UpscaleQueueConfig:
    """
    Resolve config: Default < Local < CLI
    Returns validated Pydantic UpscaleQueueConfig model.

    Raises:
        pydantic.ValidationError: If the merged config is invalid
    """
    cli_args = cli_args or {}

    config_data = load_yaml(Path(default_path))

    local_data = load_yaml(Path(local_path))
    config_data = merge_dicts(config_data, local_data)

    config = UpscaleQueueConfig.from_dict(config_data)
    return config.merge_cli_overrides(cli_args)
