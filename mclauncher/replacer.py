import logging
import re
from typing import Any, Dict, Iterable, List

log = logging.getLogger(__name__)


def replace_text(value: str, replacements: Dict[str, str]) -> str:
    """
    Replaces all occurrences of the given substrings within a string.
    Does not use regular expressions.

    Args:
        value: The original string to perform replacements on.
        replacements: Mapping of substrings to find to their replacement.

    Returns:
        The string with every replacement applied, in mapping order.
        Non-string values are returned unchanged.
    """
    if not isinstance(value, str):
        return value

    modified_value = value
    for search_string, replace_string in replacements.items():
        if isinstance(search_string, str) and isinstance(replace_string, str):
            modified_value = modified_value.replace(search_string, replace_string)
        else:
            log.warning(f"replace_text: Skipping replacement for key '{search_string}' as either key or value is not a string.")

    return modified_value


_PLACEHOLDER = re.compile(r"\$\{([A-Za-z0-9_]+)\}")


def expand(template: str, values: Dict[str, str]) -> str:
    """Expands ``${name}`` placeholders in a single pass.

    Substituted values are never scanned again, so a username such as
    ``${classpath}`` is passed through literally. Unknown names stay verbatim.
    """
    return _PLACEHOLDER.sub(lambda m: values.get(m.group(1), m.group(0)), template)


def expand_all(templates: Iterable[str], values: Dict[str, str]) -> List[str]:
    return [expand(template, values) for template in templates]


def patch_config(value: Any, replacements: Dict[str, str]) -> Any:
    """Applies ``replace_text`` to every string nested in a loaded JSON document."""
    if isinstance(value, dict):
        return {key: patch_config(item, replacements) for key, item in value.items()}
    if isinstance(value, list):
        return [patch_config(item, replacements) for item in value]
    return replace_text(value, replacements)
