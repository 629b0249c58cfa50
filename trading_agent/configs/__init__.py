"""
Agent configuration.

The bundled agent.yaml is read as text, ``${VAR}`` / ``${VAR:-default}``
placeholders are resolved from the environment, and the result is parsed
with PyYAML. A different file can be chosen per call or through the
AGENT_CONFIG environment variable.
"""

import os
import re
from pathlib import Path
from typing import Any, Dict, Optional, Union

import yaml

BUNDLED_CONFIG = Path(__file__).parent / "agent.yaml"

_PLACEHOLDER = re.compile(r'\$\{([^}]+)\}')


def substitute_env_vars(content: str) -> str:
    """
    Resolve environment placeholders in raw YAML text.

    Raises:
        ValueError: If a placeholder without a default names an unset variable
    """
    def resolve(match: "re.Match[str]") -> str:
        name, has_default, default = match.group(1).partition(':-')
        value = os.getenv(name.strip())
        if value is not None:
            return value
        if has_default:
            return default
        raise ValueError(f"Environment variable {name.strip()} is required but not set")

    return _PLACEHOLDER.sub(resolve, content)


def load_agent_config(config_path: Optional[Union[str, Path]] = None) -> Dict[str, Any]:
    """
    Load the trading agent configuration.

    Args:
        config_path: Explicit YAML path; falls back to $AGENT_CONFIG, then the bundled agent.yaml

    Returns:
        Configuration dictionary (empty for an empty file)

    Raises:
        FileNotFoundError: If the chosen file does not exist
        ValueError: If a required environment variable is unset
    """
    path = Path(config_path or os.getenv('AGENT_CONFIG') or BUNDLED_CONFIG)
    if not path.exists():
        raise FileNotFoundError(f"Configuration file not found: {path}")

    content = substitute_env_vars(path.read_text(encoding='utf-8'))
    return yaml.safe_load(content) or {}


def get_config_value(config: Dict[str, Any], key: str, default: Any = None) -> Any:
    """Look up a dotted key such as 'execution.cooldown_seconds'."""
    node: Any = config
    for part in key.split('.'):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node
