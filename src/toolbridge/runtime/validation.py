"""SchemaValidator — checks invocation arguments against a ParameterContract.

Each contract is compiled once into a strict pydantic model: no coercion,
unknown fields rejected unless the contract allows passthrough.  Validation
failures become an :class:`InvalidParamsError` listing every offending field.
"""

from __future__ import annotations

import threading
from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, create_model

from toolbridge.protocol.errors import FieldError, InvalidParamsError
from toolbridge.runtime.models import ParameterContract, ParameterSpec


class SchemaValidator:
    """Validate argument dicts; compiled contract models are cached."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._compiled: dict[int, tuple[ParameterContract, type[BaseModel]]] = {}

    def validate(self, contract: ParameterContract, arguments: Any) -> dict[str, Any]:
        """Return the validated arguments, unchanged.

        Only supplied fields (plus passthrough extras) are returned; optional
        parameters the caller omitted stay absent.

        Raises:
            InvalidParamsError: With one :class:`FieldError` per offending field.
        """
        if not isinstance(arguments, dict):
            raise InvalidParamsError([FieldError(field="arguments", message="must be an object")])

        model = self._model_for(contract)
        try:
            validated = model.model_validate(arguments)
        except ValidationError as exc:
            raise InvalidParamsError(_field_errors(exc)) from exc
        return validated.model_dump(by_alias=True, exclude_unset=True)

    def _model_for(self, contract: ParameterContract) -> type[BaseModel]:
        key = id(contract)
        with self._lock:
            cached = self._compiled.get(key)
            if cached is not None and cached[0] is contract:
                return cached[1]
        model = compile_contract(contract)
        with self._lock:
            self._compiled[key] = (contract, model)
        return model


def compile_contract(contract: ParameterContract) -> type[BaseModel]:
    """Build a strict pydantic model for *contract*.

    Parameter names are attached as aliases on positional field names so that
    any argument name (``schema``, ``_meta``, ``model_config`` ...) is safe.
    """
    fields: dict[str, Any] = {}
    for index, (name, spec) in enumerate(contract.parameters.items()):
        annotation = _annotation_for(spec)
        default = ... if spec.required else None
        fields[f"p{index}"] = (annotation, Field(default=default, alias=name))

    config = ConfigDict(
        strict=True,
        extra="allow" if contract.allow_extra else "forbid",
        populate_by_name=False,
    )
    return create_model("ToolArguments", __config__=config, **fields)


def _annotation_for(spec: ParameterSpec) -> Any:
    constraints: dict[str, Any] = {}
    base: Any
    if spec.type == "string":
        base = str
        constraints.update(min_length=spec.min_length, max_length=spec.max_length, pattern=spec.pattern)
    elif spec.type == "number":
        base = float
        constraints.update(ge=spec.minimum, le=spec.maximum)
    elif spec.type == "integer":
        base = int
        constraints.update(ge=spec.minimum, le=spec.maximum)
    elif spec.type == "boolean":
        base = bool
    elif spec.type == "enum":
        base = Literal[tuple(spec.values or ())]  # type: ignore[misc]
    elif spec.type == "array":
        item = _annotation_for(spec.items) if spec.items is not None else Any
        base = list[item]  # type: ignore[valid-type]
        constraints.update(min_length=spec.min_length, max_length=spec.max_length)
    else:
        base = dict[str, Any]

    constraints = {k: v for k, v in constraints.items() if v is not None}
    if not constraints:
        return base
    return Annotated[base, Field(**constraints)]


def _field_errors(exc: ValidationError) -> list[FieldError]:
    errors: list[FieldError] = []
    for err in exc.errors():
        loc = [str(part) for part in err["loc"]]
        field = ".".join(loc) if loc else "arguments"
        message = err["msg"]
        if err["type"] == "missing":
            message = "required field is missing"
        elif err["type"] == "extra_forbidden":
            message = "unknown field is not allowed"
        errors.append(FieldError(field=field, message=message))
    return errors
