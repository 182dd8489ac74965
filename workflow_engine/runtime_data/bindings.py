"""
Variable Bindings

Declared step inputs (literal, variable reference, interpolated expression)
and their resolution against a VariableStore.
"""

import json
import re
from collections.abc import Mapping
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Optional

from .state import VariableStore

TEMPLATE_PATTERN = re.compile(r"\$\{\s*([^{}]+?)\s*\}")
_NUMBER_PATTERN = re.compile(r"-?\d+(\.\d+)?")
_FALSY_STRINGS = ("", "false", "0")


class BindingKind(str, Enum):
    """Kind of a variable binding."""

    LITERAL = "literal"
    VARIABLE = "variable"
    EXPRESSION = "expression"


@dataclass(frozen=True)
class VariableBinding:
    """
    How a step obtains a runtime value.

    ``value`` is the embedded literal, the variable name, or the template
    string depending on ``kind``.
    """

    kind: BindingKind
    value: Any = None

    @classmethod
    def literal(cls, value: Any) -> "VariableBinding":
        return cls(BindingKind.LITERAL, value)

    @classmethod
    def variable(cls, name: str) -> "VariableBinding":
        return cls(BindingKind.VARIABLE, name)

    @classmethod
    def expression(cls, template: str) -> "VariableBinding":
        return cls(BindingKind.EXPRESSION, template)

    @classmethod
    def from_value(cls, data: Any) -> "VariableBinding":
        """
        Create a binding from its serialized form.

        Accepts ``{"type": "literal", "value": ...}``,
        ``{"type": "variable", "name": ...}``,
        ``{"type": "expression", "expression": ...}``, an existing binding,
        a bare string containing ``${`` (expression) or any other bare value
        (literal).

        Args:
            data: Serialized binding

        Returns:
            VariableBinding instance

        Raises:
            ValueError: If a typed binding dictionary is malformed
        """
        if isinstance(data, VariableBinding):
            return data

        if isinstance(data, Mapping) and "type" in data:
            kind = data["type"]
            if kind == BindingKind.LITERAL.value:
                return cls.literal(data.get("value"))
            if kind == BindingKind.VARIABLE.value:
                name = data.get("name")
                if not isinstance(name, str) or not name:
                    raise ValueError("Variable binding requires a non-empty 'name'")
                return cls.variable(name)
            if kind == BindingKind.EXPRESSION.value:
                expression = data.get("expression")
                if not isinstance(expression, str):
                    raise ValueError("Expression binding requires an 'expression' string")
                return cls.expression(expression)
            raise ValueError(f"Unknown binding type '{kind}'")

        if isinstance(data, str) and "${" in data:
            return cls.expression(data)

        return cls.literal(data)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary."""
        if self.kind == BindingKind.LITERAL:
            return {"type": "literal", "value": self.value}
        if self.kind == BindingKind.VARIABLE:
            return {"type": "variable", "name": self.value}
        return {"type": "expression", "expression": self.value}


def resolve(binding: Optional[VariableBinding], store: VariableStore) -> Any:
    """
    Resolve a binding against the store.

    Pure and total: unset variables resolve to None and never raise.

    Args:
        binding: Binding to resolve (None resolves to None)
        store: Current variable store

    Returns:
        Runtime value
    """
    if binding is None:
        return None
    if binding.kind == BindingKind.LITERAL:
        return binding.value
    if binding.kind == BindingKind.VARIABLE:
        return store.lookup(binding.value)
    if binding.kind == BindingKind.EXPRESSION:
        return render_template(binding.value, store)
    raise ValueError(f"Unknown binding kind: {binding.kind}")


def render_template(template: str, store: Mapping) -> str:
    """
    Substitute ``${name}`` tokens left to right in a single pass.

    Inserted text is never re-scanned. Tokens naming unset variables become
    the empty string.

    Args:
        template: Template string
        store: Variables to substitute from

    Returns:
        Rendered string
    """
    variables = _as_store(store)

    def _replace(match: "re.Match") -> str:
        return stringify(variables.lookup(match.group(1)))

    return TEMPLATE_PATTERN.sub(_replace, template)


def evaluate_expression(expression: str, store: Mapping) -> Any:
    """
    Evaluate a Transform expression.

    A template made of exactly one token yields the raw variable value.
    Otherwise the rendered string is coerced: "true"/"false" become booleans
    and integer or decimal literals become numbers.

    Args:
        expression: Template string
        store: Variables, including ``$input`` for transforms

    Returns:
        Evaluated value
    """
    variables = _as_store(store)
    match = TEMPLATE_PATTERN.fullmatch(expression.strip())
    if match:
        return variables.lookup(match.group(1))

    rendered = render_template(expression, variables)
    if rendered == "true":
        return True
    if rendered == "false":
        return False
    if _NUMBER_PATTERN.fullmatch(rendered):
        return float(rendered) if "." in rendered else int(rendered)
    return rendered


def is_truthy(value: Any) -> bool:
    """
    Coerce a rendered condition to a boolean.

    Non-empty strings other than "false" and "0" are true (case and
    surrounding whitespace ignored).
    """
    text = value if isinstance(value, str) else stringify(value)
    return text.strip().lower() not in _FALSY_STRINGS


def stringify(value: Any) -> str:
    """Render a variable value for insertion into a template."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, str):
        return value
    if isinstance(value, (Mapping, list, tuple)):
        try:
            return json.dumps(value, default=str)
        except (TypeError, ValueError):
            return str(value)
    return str(value)


def _as_store(store: Mapping) -> VariableStore:
    if isinstance(store, VariableStore):
        return store
    return VariableStore(store)
