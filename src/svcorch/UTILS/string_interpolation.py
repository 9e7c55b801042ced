"""
Utilities for string interpolation using environment variables.
"""
import re
from typing import Any, Dict, List, Mapping, Optional

from ..errors import ConfigError


class EnvironmentInterpolator:
    """
    Compose-style variable interpolation.

    Supports ``$VAR``, ``${VAR}``, ``${VAR:-default}``, ``${VAR-default}``,
    ``${VAR:+alt}``, ``${VAR+alt}``, ``${VAR:?message}``, ``${VAR?message}``
    and ``$$`` for a literal dollar sign. A colon makes the modifier treat an
    empty value like an unset one.
    """
    # Group 1: escaped "$$"
    # Group 2: braced name, group 3: modifier, group 4: modifier argument
    # Group 5: bare name
    PATTERN = re.compile(
        r'\$(?:(\$)'
        r'|\{([A-Za-z_][A-Za-z0-9_]*)(?:(:?[-+?])([^}]*))?\}'
        r'|([A-Za-z_][A-Za-z0-9_]*))'
    )

    def __init__(self, context: Mapping[str, str], strict: bool = False):
        """
        :param context: Variables available for substitution.
        :param strict: Raise KeyError for an unset variable without a default
            instead of substituting an empty string.
        """
        self.context = context
        self.strict = strict
        self.missing: List[str] = []

    def interpolate(self, template: str) -> str:
        """
        Interpolates variables in a single string.

        :raises KeyError: In strict mode, if a variable is unset and has no default.
        :raises ConfigError: If a ``?`` modifier fires.
        """
        def replace(match):
            if match.group(1):
                return '$'
            name = match.group(2) or match.group(5)
            modifier = match.group(3)
            argument = match.group(4) or ''
            value = self.context.get(name)
            unset = value is None or (modifier is not None and modifier.startswith(':') and value == '')

            if modifier in (':-', '-'):
                return argument if unset else value
            if modifier in (':+', '+'):
                return '' if unset else argument
            if modifier in (':?', '?'):
                if unset:
                    raise ConfigError(argument or f"Required variable {name} is not set")
                return value

            if value is None:
                if self.strict:
                    raise KeyError(f"Variable {name} not found in context")
                if name not in self.missing:
                    self.missing.append(name)
                return ''
            return value

        return self.PATTERN.sub(replace, template)

    def interpolate_tree(self, node: Any) -> Any:
        """
        Interpolates every string value (not mapping keys) in a parsed YAML tree.
        """
        if isinstance(node, str):
            return self.interpolate(node)
        if isinstance(node, dict):
            return {k: self.interpolate_tree(v) for k, v in node.items()}
        if isinstance(node, list):
            return [self.interpolate_tree(v) for v in node]
        return node
