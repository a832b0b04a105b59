from ruamel.yaml import YAML
from ruamel.yaml.error import YAMLError

OPTIONS_YAML = YAML()

__all__ = [
    "OPTIONS_YAML",
    "YAMLError",
]
