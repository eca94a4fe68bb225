"""Translate JSON-schema tool inputs into Pydantic models.

Tools may declare their input contract as a plain JSON-schema object. The
schema is compiled once, at definition time, into a strict Pydantic model so
that validation and error reporting share one code path with tools declaring
a model class directly. Property names are carried as aliases, which keeps
arbitrary JSON keys usable as field names.
"""

from __future__ import annotations

import re
from collections.abc import Mapping
from typing import Annotated, Any, Union

from pydantic import (
    AfterValidator,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    ValidationError,
    conint,
    conlist,
    constr,
    create_model,
    confloat,
)
from pydantic_core import PydanticUndefined


def model_from_schema(tool_name: str, schema: Mapping[str, Any]) -> type[BaseModel]:
    if not isinstance(schema, Mapping):
        raise TypeError("input schema must be a mapping or a pydantic model class")
    schema_type = schema.get("type", "object")
    if schema_type != "object":
        raise ValueError(f"input schema for {tool_name} must describe an object, got {schema_type!r}")
    return _object_model(_model_name(tool_name), schema)


def schema_of(schema: Mapping[str, Any] | type[BaseModel]) -> dict[str, Any]:
    if isinstance(schema, type) and issubclass(schema, BaseModel):
        return schema.model_json_schema(by_alias=True)
    return dict(schema)


def dump_arguments(instance: BaseModel) -> dict[str, Any]:
    """Return validated arguments keyed by their original JSON names.

    Optional properties the caller omitted stay absent unless the schema
    declares a default for them.
    """

    data = instance.model_dump(by_alias=True, exclude_unset=True)
    data.update(instance.model_extra or {})
    for name, info in type(instance).model_fields.items():
        key = info.alias or name
        if key not in data and info.default is not PydanticUndefined and info.default is not None:
            data[key] = info.default
    return data


def format_validation_error(exc: ValidationError) -> str:
    parts: list[str] = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ())) or "<root>"
        parts.append(f"{location}: {err.get('msg', 'invalid value')}")
    return "; ".join(parts) or str(exc)


def _model_name(tool_name: str) -> str:
    words = [w for w in re.split(r"[^0-9A-Za-z]+", tool_name) if w]
    return "".join(w[:1].upper() + w[1:] for w in words) + "Arguments"


def _object_model(model_name: str, schema: Mapping[str, Any]) -> type[BaseModel]:
    properties = schema.get("properties") or {}
    required = set(schema.get("required") or ())
    extra = "forbid" if schema.get("additionalProperties") is False else "allow"

    fields: dict[str, Any] = {}
    for index, (prop_name, prop_schema) in enumerate(properties.items()):
        prop_schema = prop_schema if isinstance(prop_schema, Mapping) else {}
        annotation = _annotation(f"{model_name}{index}", prop_schema)
        description = prop_schema.get("description")
        if prop_name in required:
            fields[f"field_{index}"] = (annotation, Field(..., alias=prop_name, description=description))
        else:
            default = prop_schema.get("default")
            # absent keys take the default; an explicit null must match the type
            fields[f"field_{index}"] = (annotation, Field(default=default, alias=prop_name, description=description))

    return create_model(model_name, __config__=ConfigDict(extra=extra), **fields)


def _annotation(model_name: str, schema: Mapping[str, Any]) -> Any:
    if "enum" in schema and schema["enum"]:
        return Annotated[Any, AfterValidator(_one_of(tuple(schema["enum"])))]

    schema_type = schema.get("type")
    if isinstance(schema_type, list):
        members = [_annotation(model_name, {**schema, "type": t}) for t in schema_type]
        return Union[tuple(members)]  # noqa: UP007

    if schema_type == "string":
        return constr(
            strict=True,
            min_length=schema.get("minLength"),
            max_length=schema.get("maxLength"),
            pattern=schema.get("pattern"),
        )
    if schema_type == "integer":
        return Annotated[
            Union[StrictInt, StrictFloat],  # noqa: UP007
            AfterValidator(_whole_number(schema.get("minimum"), schema.get("maximum"))),
        ]
    if schema_type == "number":
        bounds = {"ge": schema.get("minimum"), "le": schema.get("maximum")}
        return Union[conint(strict=True, **bounds), confloat(strict=True, **bounds)]  # noqa: UP007
    if schema_type == "boolean":
        return StrictBool
    if schema_type == "null":
        return None
    if schema_type == "array":
        items = schema.get("items")
        item_type = _annotation(f"{model_name}Item", items) if isinstance(items, Mapping) else Any
        return conlist(item_type, min_length=schema.get("minItems"), max_length=schema.get("maxItems"))
    if schema_type == "object":
        if schema.get("properties"):
            return _object_model(model_name, schema)
        return dict[str, Any]
    return Any


def _one_of(choices: tuple[Any, ...]) -> Any:
    def check(value: Any) -> Any:
        # JSON booleans are not numbers, even though True == 1 in Python
        for choice in choices:
            if choice == value and isinstance(choice, bool) == isinstance(value, bool):
                return value
        raise ValueError(f"value must be one of {list(choices)!r}")

    return check


def _whole_number(minimum: Any, maximum: Any) -> Any:
    def check(value: int | float) -> int:
        if isinstance(value, float):
            if not value.is_integer():
                raise ValueError("value must be an integer")
            value = int(value)
        if minimum is not None and value < minimum:
            raise ValueError(f"value must be greater than or equal to {minimum}")
        if maximum is not None and value > maximum:
            raise ValueError(f"value must be less than or equal to {maximum}")
        return value

    return check


__all__ = ["dump_arguments", "format_validation_error", "model_from_schema", "schema_of"]
