"""Workflow definitions: trigger, steps and data templates.

A template is plain JSON in which three marker objects are interpreted:

``{"$ref": {"step": "price", "path": ["data", "price"]}}``
    the value produced by step ``price``, narrowed by ``path``;
``{"$ref": {"input": "symbol"}}``
    a value from the run's initial context;
``{"$format": "BTC is {price}", "values": {"price": <template>}}``
    a string rendered from resolved values (``{{``/``}}`` escape braces);
``{"$literal": <json>}``
    a value taken verbatim, even if it looks like a marker.

Lists and other objects are resolved element by element; scalars are literal.
References are structured, so a missing value is detected when the template
is resolved instead of being rendered as ``None`` inside a string.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Annotated, Any, Dict, Iterator, List, Literal, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from onstep.service.errors import DefinitionError, InvalidTrigger, UnresolvedReference
from onstep.service.sandbox import DEFAULT_ENTRY_POINT
from onstep.service.schedule import validate_cron

REF_KEY = "$ref"
FORMAT_KEY = "$format"
LITERAL_KEY = "$literal"

_STEP_ID_PATTERN = r"^[A-Za-z][A-Za-z0-9_\-]{0,63}$"
_FORMAT_TOKEN = re.compile(r"\{\{|\}\}|\{([A-Za-z_][A-Za-z0-9_]*)\}")
_MISSING = object()


@dataclass(frozen=True)
class Reference:
    """A pointer into the execution context: a step output or an initial input."""

    source: Literal["step", "input"]
    name: str
    path: Tuple[Union[str, int], ...] = ()

    def describe(self) -> str:
        suffix = "".join(f"[{p!r}]" for p in self.path)
        return f"{self.source}:{self.name}{suffix}"


def _parse_reference(raw: Any) -> Reference:
    if not isinstance(raw, dict):
        raise ValueError(f"{REF_KEY} must be an object with 'step' or 'input'")
    unknown = set(raw) - {"step", "input", "path"}
    if unknown:
        raise ValueError(f"{REF_KEY} has unknown keys: {sorted(unknown)}")
    if ("step" in raw) == ("input" in raw):
        raise ValueError(f"{REF_KEY} needs exactly one of 'step' or 'input'")
    source = "step" if "step" in raw else "input"
    name = raw[source]
    if not isinstance(name, str) or not name:
        raise ValueError(f"{REF_KEY}.{source} must be a non-empty string")
    path = raw.get("path", [])
    if isinstance(path, str):
        path = [p for p in path.split(".") if p]
    if not isinstance(path, list) or not all(
        isinstance(p, (str, int)) and not isinstance(p, bool) for p in path
    ):
        raise ValueError(f"{REF_KEY}.path must be a list of keys and indexes")
    return Reference(source=source, name=name, path=tuple(path))


def iter_references(template: Any) -> Iterator[Reference]:
    """Yield every reference in ``template``; raise ValueError if malformed."""
    if isinstance(template, list):
        for item in template:
            yield from iter_references(item)
        return
    if not isinstance(template, dict):
        return
    if REF_KEY in template:
        if len(template) != 1:
            raise ValueError(f"{REF_KEY} objects cannot carry other keys")
        yield _parse_reference(template[REF_KEY])
        return
    if FORMAT_KEY in template:
        if set(template) - {FORMAT_KEY, "values"}:
            raise ValueError(f"{FORMAT_KEY} objects only accept 'values'")
        text = template[FORMAT_KEY]
        values = template.get("values") or {}
        if not isinstance(text, str) or not isinstance(values, dict):
            raise ValueError(f"{FORMAT_KEY} must be a string with a 'values' object")
        for match in _FORMAT_TOKEN.finditer(text):
            name = match.group(1)
            if name is not None and name not in values:
                raise ValueError(f"{FORMAT_KEY} placeholder '{{{name}}}' has no value")
        for value in values.values():
            yield from iter_references(value)
        return
    if LITERAL_KEY in template:
        if len(template) != 1:
            raise ValueError(f"{LITERAL_KEY} objects cannot carry other keys")
        return
    for value in template.values():
        yield from iter_references(value)


def _walk_path(value: Any, path: Tuple[Union[str, int], ...]) -> Any:
    current = value
    for part in path:
        if isinstance(current, dict):
            key = part if isinstance(part, str) else str(part)
            if key not in current:
                return _MISSING
            current = current[key]
        elif isinstance(current, list):
            try:
                index = int(part)
            except (TypeError, ValueError):
                return _MISSING
            if not -len(current) <= index < len(current):
                return _MISSING
            current = current[index]
        else:
            return _MISSING
    return current


def _format_value(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def resolve_template(
    template: Any,
    *,
    outputs: Mapping[str, Any],
    inputs: Mapping[str, Any],
) -> Any:
    """Materialize ``template`` against step outputs and initial inputs."""
    if isinstance(template, list):
        return [resolve_template(item, outputs=outputs, inputs=inputs) for item in template]
    if not isinstance(template, dict):
        return template
    if REF_KEY in template:
        ref = _parse_reference(template[REF_KEY])
        scope = outputs if ref.source == "step" else inputs
        if ref.name not in scope:
            raise UnresolvedReference(
                f"{ref.describe()} has not been produced",
                detail={"reference": ref.describe()},
            )
        value = _walk_path(scope[ref.name], ref.path)
        if value is _MISSING:
            raise UnresolvedReference(
                f"{ref.describe()} does not exist",
                detail={"reference": ref.describe()},
            )
        return value
    if FORMAT_KEY in template:
        values = {
            name: resolve_template(value, outputs=outputs, inputs=inputs)
            for name, value in (template.get("values") or {}).items()
        }

        def _substitute(match: re.Match) -> str:
            token = match.group(0)
            if token == "{{":
                return "{"
            if token == "}}":
                return "}"
            name = match.group(1)
            value = values.get(name)
            if value is None:
                raise UnresolvedReference(
                    f"placeholder '{{{name}}}' resolved to no value",
                    detail={"placeholder": name},
                )
            return _format_value(value)

        return _FORMAT_TOKEN.sub(_substitute, template[FORMAT_KEY])
    if LITERAL_KEY in template:
        return template[LITERAL_KEY]
    return {key: resolve_template(value, outputs=outputs, inputs=inputs) for key, value in template.items()}


# =========================================================================
# Models
# =========================================================================


class ImmediateTrigger(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["immediate"] = "immediate"


class ScheduledTrigger(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    type: Literal["scheduled"] = "scheduled"
    cron: str

    @field_validator("cron")
    @classmethod
    def _validate_cron(cls, value: str) -> str:
        try:
            return validate_cron(value)
        except InvalidTrigger as exc:
            raise ValueError(exc.message) from exc


TriggerSpec = Annotated[Union[ImmediateTrigger, ScheduledTrigger], Field(discriminator="type")]


class _StepBase(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")

    id: str = Field(..., pattern=_STEP_ID_PATTERN)
    # Ordering-only edges for steps that share no data
    depends_on: Tuple[str, ...] = ()

    def templates(self) -> List[Any]:
        return []

    def references(self) -> List[Reference]:
        refs: List[Reference] = []
        for template in self.templates():
            refs.extend(iter_references(template))
        return refs

    def dependencies(self) -> set[str]:
        deps = {ref.name for ref in self.references() if ref.source == "step"}
        deps.update(self.depends_on)
        return deps

    @model_validator(mode="after")
    def _check_templates(self):
        self.references()
        return self


class CodeStep(_StepBase):
    """Runs user code in the sandbox; ``inputs`` becomes the entry point's ``input``."""

    type: Literal["code"] = "code"
    code: str = Field(..., min_length=1)
    entry_point: str = DEFAULT_ENTRY_POINT
    inputs: Any = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    def templates(self) -> List[Any]:
        return [self.inputs]


class ToolStep(_StepBase):
    """Invokes a named tool with resolved ``args``."""

    type: Literal["tool"] = "tool"
    tool: str = Field(..., min_length=1)
    args: Any = Field(default_factory=dict)
    input_schema: Optional[Dict[str, Any]] = None
    output_schema: Optional[Dict[str, Any]] = None

    def templates(self) -> List[Any]:
        return [self.args]


class StateStep(_StepBase):
    """Writes a resolved value into the run's state namespace and yields it."""

    type: Literal["state"] = "state"
    key: str = Field(..., min_length=1)
    value: Any = None

    def templates(self) -> List[Any]:
        return [self.value]


class ConditionStep(_StepBase):
    """Chooses a branch: steps in ``then`` run on true, steps in ``else`` on false.

    The condition is either sandboxed ``code`` (called like a code step) or a
    ``predicate`` template. Either way it must produce a boolean. Steps on the
    branch not taken are skipped along with everything that depends on them.
    """

    model_config = ConfigDict(frozen=True, extra="forbid", populate_by_name=True)

    type: Literal["condition"] = "condition"
    code: Optional[str] = Field(default=None, min_length=1)
    entry_point: str = DEFAULT_ENTRY_POINT
    inputs: Any = None
    predicate: Any = None
    timeout_seconds: Optional[float] = Field(default=None, gt=0)
    then: Tuple[str, ...] = ()
    else_: Tuple[str, ...] = Field(default=(), alias="else")

    def templates(self) -> List[Any]:
        return [self.inputs] if self.code is not None else [self.predicate]

    def branch(self, outcome: bool) -> Tuple[str, ...]:
        return self.then if outcome else self.else_

    @model_validator(mode="after")
    def _check_condition(self):
        if (self.code is None) == (self.predicate is None):
            raise ValueError("condition needs exactly one of 'code' or 'predicate'")
        if self.code is None and self.inputs is not None:
            raise ValueError("'inputs' only applies to code conditions")
        if not self.then and not self.else_:
            raise ValueError("condition needs a 'then' or 'else' branch")
        both = sorted(set(self.then) & set(self.else_))
        if both:
            raise ValueError(f"steps cannot be on both branches: {', '.join(both)}")
        return self


class SkipStep(_StepBase):
    """Ends the run early; the resolved ``value`` becomes the workflow output."""

    type: Literal["skip"] = "skip"
    value: Any = None

    def templates(self) -> List[Any]:
        return [self.value]


StepSpec = Annotated[
    Union[CodeStep, ToolStep, StateStep, ConditionStep, SkipStep], Field(discriminator="type")
]


class WorkflowDefinition(BaseModel):
    """Immutable workflow: a trigger, a list of steps and an optional output template."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    title: Optional[str] = None
    trigger: TriggerSpec = Field(default_factory=ImmediateTrigger)
    steps: Tuple[StepSpec, ...] = Field(..., min_length=1)
    output: Any = None

    @model_validator(mode="after")
    def _check_output_template(self):
        list(iter_references(self.output))
        return self

    def output_references(self) -> List[Reference]:
        return list(iter_references(self.output))

    def step(self, step_id: str):
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)


def parse_definition(data: Union[WorkflowDefinition, Mapping[str, Any], str]) -> WorkflowDefinition:
    """Build a :class:`WorkflowDefinition` from a mapping or JSON text.

    Raises InvalidTrigger for a bad trigger and DefinitionError otherwise.
    """
    if isinstance(data, WorkflowDefinition):
        return data
    try:
        if isinstance(data, str):
            return WorkflowDefinition.model_validate_json(data)
        return WorkflowDefinition.model_validate(data)
    except ValidationError as exc:
        errors = exc.errors(include_url=False, include_context=False, include_input=False)
        details = [
            {"loc": ".".join(str(p) for p in err["loc"]), "message": err["msg"]} for err in errors
        ]
        if any(err["loc"] and err["loc"][0] == "trigger" for err in errors):
            raise InvalidTrigger("invalid workflow trigger", detail={"errors": details}) from exc
        raise DefinitionError("invalid workflow definition", detail={"errors": details}) from exc


__all__ = [
    "CodeStep",
    "ConditionStep",
    "ImmediateTrigger",
    "Reference",
    "ScheduledTrigger",
    "SkipStep",
    "StateStep",
    "StepSpec",
    "ToolStep",
    "TriggerSpec",
    "WorkflowDefinition",
    "iter_references",
    "parse_definition",
    "resolve_template",
]
