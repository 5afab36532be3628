"""
Declarative parameter schemas and the checker that enforces them.

A ToolSchema is a mapping of parameter name to ParamSpec plus the list of
required names, mirroring the JSON-schema shape the model sees. Booleans are
never accepted as numbers.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Tuple

from .results import IssueCode, Severity, Stage, ValidationIssue

_TYPE_LABELS = {
    "number": "a number",
    "string": "a string",
    "boolean": "a boolean",
    "array": "an array",
    "object": "an object",
}


@dataclass(frozen=True)
class ParamSpec:
    type: str                                   # number | string | boolean | array | object
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    enum: Optional[Tuple[Any, ...]] = None
    default: Any = None
    items: Optional["ParamSpec"] = None          # array element spec
    fields: Mapping[str, "ParamSpec"] = field(default_factory=dict)   # object members
    required_fields: Tuple[str, ...] = ()
    description: str = ""


@dataclass(frozen=True)
class ToolSchema:
    properties: Mapping[str, ParamSpec]
    required: Tuple[str, ...] = ()

    def defaults(self) -> Dict[str, Any]:
        return {k: v.default for k, v in self.properties.items() if v.default is not None}

    def with_defaults(self, parameters: Mapping[str, Any]) -> Dict[str, Any]:
        merged = self.defaults()
        merged.update(parameters or {})
        return merged

    def numeric_range(self, name: str) -> Optional[Tuple[float, float]]:
        spec = self.properties.get(name)
        if spec is None or spec.type != "number" or spec.minimum is None or spec.maximum is None:
            return None
        return float(spec.minimum), float(spec.maximum)


def is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _matches_type(expected: str, value: Any) -> bool:
    if expected == "number":
        return is_number(value)
    if expected == "string":
        return isinstance(value, str)
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, (list, tuple))
    if expected == "object":
        return isinstance(value, dict)
    return True


def _error(code: IssueCode, message: str, parameter: str) -> ValidationIssue:
    return ValidationIssue(code=code, message=message, parameter=parameter, stage=Stage.SCHEMA)


def _check_value(path: str, spec: ParamSpec, value: Any, issues: List[ValidationIssue]) -> None:
    if not _matches_type(spec.type, value):
        issues.append(_error(
            IssueCode.WRONG_TYPE,
            f"Parameter '{path}' must be {_TYPE_LABELS.get(spec.type, spec.type)}, got {type(value).__name__}",
            path,
        ))
        return

    if spec.enum is not None and value not in spec.enum:
        allowed = ", ".join(str(v) for v in spec.enum)
        issues.append(_error(
            IssueCode.NOT_IN_ENUM,
            f"Parameter '{path}' must be one of [{allowed}], got {value!r}",
            path,
        ))
        return

    if spec.type == "number":
        if spec.minimum is not None and value < spec.minimum:
            issues.append(_error(
                IssueCode.OUT_OF_BOUNDS,
                f"Parameter '{path}' must be >= {spec.minimum:g}, got {value:g}",
                path,
            ))
        elif spec.maximum is not None and value > spec.maximum:
            issues.append(_error(
                IssueCode.OUT_OF_BOUNDS,
                f"Parameter '{path}' must be <= {spec.maximum:g}, got {value:g}",
                path,
            ))
    elif spec.type == "array" and spec.items is not None:
        for idx, item in enumerate(value):
            _check_value(f"{path}[{idx}]", spec.items, item, issues)
    elif spec.type == "object":
        for name in spec.required_fields:
            if name not in value:
                issues.append(_error(
                    IssueCode.MISSING_PARAMETER,
                    f"Parameter '{path}' is missing required field '{name}'",
                    f"{path}.{name}",
                ))
        for name, sub_spec in spec.fields.items():
            if name in value and value[name] is not None:
                _check_value(f"{path}.{name}", sub_spec, value[name], issues)


def check_schema(schema: ToolSchema, parameters: Any) -> List[ValidationIssue]:
    """
    Check parameters against a schema.

    Returns a list of issues: errors for every violation, warnings for
    parameters the schema does not declare. Never raises.
    """
    if not isinstance(parameters, dict):
        return [_error(IssueCode.WRONG_TYPE, "Parameters must be an object", "")]

    issues: List[ValidationIssue] = []
    for name in schema.required:
        if parameters.get(name) is None:
            issues.append(_error(
                IssueCode.MISSING_PARAMETER,
                f"Missing required parameter '{name}'",
                name,
            ))

    for name, value in parameters.items():
        spec = schema.properties.get(name)
        if spec is None:
            issues.append(ValidationIssue(
                code=IssueCode.UNKNOWN_PARAMETER,
                message=f"Unknown parameter '{name}' will be ignored",
                parameter=name,
                severity=Severity.WARNING,
                stage=Stage.SCHEMA,
            ))
            continue
        if value is None:
            continue
        _check_value(name, spec, value, issues)

    return issues
