"""
Runtime Data Module

Manages runtime data for workflow executions:
- State: StepResult, StepStatus and the immutable VariableStore
- Bindings: VariableBinding and its resolution/interpolation rules
"""

from .bindings import (
    BindingKind,
    VariableBinding,
    evaluate_expression,
    is_truthy,
    render_template,
    resolve,
)
from .state import StepResult, StepStatus, VariableStore

__all__ = [
    # State
    "StepResult",
    "StepStatus",
    "VariableStore",
    # Bindings
    "BindingKind",
    "VariableBinding",
    "evaluate_expression",
    "is_truthy",
    "render_template",
    "resolve",
]
