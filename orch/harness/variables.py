"""
variables.py - Scenario variables

Steps publish values from their responses (response_variables) and later
steps reference them as ${name} inside arguments, payloads and commands.

Interpolation rules:
- a string that is exactly "${name}" becomes the stored value itself,
  keeping its JSON type (number, object, ...)
- placeholders embedded in longer strings are replaced by text: strings
  verbatim, anything else JSON-encoded
- dicts and lists are walked recursively; other values pass through
"""

import json
import logging
import re
from typing import Any, Dict, Iterator, List, Optional, Set

from orch.errors import UnresolvedVariableError

logger = logging.getLogger(__name__)

PLACEHOLDER = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_.-]*)\}")

_MISSING = object()


class VariableContext:
    """
    Name -> JSON value store, written only after successful steps.

    Usage:
        variables = VariableContext()
        variables.set("world_id", "w-42")
        variables.interpolate({"world": "${world_id}"})  # {'world': 'w-42'}
    """

    def __init__(self, initial: Optional[Dict[str, Any]] = None, strict: bool = False):
        self._values: Dict[str, Any] = dict(initial or {})
        self.strict = strict

    def set(self, name: str, value: Any) -> None:
        self._values[name] = value

    def get(self, name: str, default: Any = None) -> Any:
        return self._values.get(name, default)

    def __contains__(self, name: str) -> bool:
        return name in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __iter__(self) -> Iterator[str]:
        return iter(self._values)

    def as_dict(self) -> Dict[str, Any]:
        return dict(self._values)

    def interpolate(self, value: Any, step_name: Optional[str] = None) -> Any:
        """
        Substitute ${name} placeholders in value.

        Raises:
            UnresolvedVariableError: In strict mode, if any name is unknown
        """
        unresolved: Set[str] = set()
        result = self._walk(value, unresolved)
        if unresolved:
            if self.strict:
                raise UnresolvedVariableError(unresolved, step_name=step_name)
            logger.warning("Unresolved variable(s) %s%s left as-is",
                           ", ".join(sorted(unresolved)),
                           f" in step '{step_name}'" if step_name else "")
        return result

    def _walk(self, value: Any, unresolved: Set[str]) -> Any:
        if isinstance(value, dict):
            return {k: self._walk(v, unresolved) for k, v in value.items()}
        if isinstance(value, list):
            return [self._walk(v, unresolved) for v in value]
        if isinstance(value, tuple):
            return tuple(self._walk(v, unresolved) for v in value)
        if isinstance(value, str):
            return self._substitute(value, unresolved)
        return value

    def _substitute(self, text: str, unresolved: Set[str]) -> Any:
        whole = PLACEHOLDER.fullmatch(text)
        if whole:
            name = whole.group(1)
            if name in self._values:
                return self._values[name]
            unresolved.add(name)
            return text

        def replace(m: "re.Match") -> str:
            name = m.group(1)
            if name not in self._values:
                unresolved.add(name)
                return m.group(0)
            return to_text(self._values[name])

        return PLACEHOLDER.sub(replace, text)

    def extract(self, response: Any, mapping: Dict[str, str],
                step_name: Optional[str] = None) -> List[str]:
        """
        Store response values under variable names.

        Args:
            response: Step response (tool results are unwrapped first)
            mapping: variable name -> dotted path into the response

        Returns:
            Names that were set; missing paths are skipped with a warning
        """
        document = unwrap_tool_result(response)
        stored = []
        for name, path in mapping.items():
            value = extract_path(document, path)
            if value is _MISSING and document is not response:
                value = extract_path(response, path)
            if value is _MISSING:
                logger.warning("Path '%s' not found in response%s; '%s' not set",
                               path, f" of step '{step_name}'" if step_name else "", name)
                continue
            self._values[name] = value
            stored.append(name)
            logger.debug("Variable %s = %r", name, value)
        return stored


def to_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value)


def extract_path(document: Any, path: str, default: Any = _MISSING) -> Any:
    """
    Follow a dotted path: dict keys by name, list items by integer index.

    extract_path({"a": [{"b": 42}]}, "a.0.b") -> 42
    """
    current = document
    for segment in path.split("."):
        if isinstance(current, dict):
            if segment not in current:
                return default
            current = current[segment]
        elif isinstance(current, list):
            try:
                index = int(segment)
            except ValueError:
                return default
            if not -len(current) <= index < len(current):
                return default
            current = current[index]
        else:
            return default
    return current


def unwrap_tool_result(result: Any) -> Any:
    """
    Unwrap a tools/call result of the form
    {"content": [{"type": "text", "text": "<json document>"}]}.

    Results that aren't wrapped, or whose text isn't JSON, are returned as-is.
    """
    if not isinstance(result, dict):
        return result
    content = result.get("content")
    if not isinstance(content, list) or not content or not isinstance(content[0], dict):
        return result
    text = content[0].get("text")
    if not isinstance(text, str):
        return result
    try:
        return json.loads(text)
    except json.JSONDecodeError:
        return result
