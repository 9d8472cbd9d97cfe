"""Build pydantic parameter models from structural tool schemas.

A structural schema maps each field name to a small descriptor::

    region:  {type: string, required: true, enum: [AMER, EMEA, APAC]}
    quarter: {type: string, required: true}
    limit:   {type: integer, default: 10, minimum: 1, maximum: 100}

Unknown fields are rejected so a tool is never invoked with input it did
not declare.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, create_model

_TYPES: dict[str, Any] = {
    "string": str,
    "integer": int,
    "number": float,
    "boolean": bool,
    "object": dict[str, Any],
    "array": list[Any],
}


def build_args_model(tool_name: str, fields: dict[str, dict[str, Any]]) -> type[BaseModel]:
    definitions: dict[str, Any] = {}
    for field_name, descriptor in fields.items():
        type_name = descriptor.get("type", "string")
        if type_name not in _TYPES:
            raise ValueError(f"{tool_name}.{field_name}: unsupported type {type_name!r}")

        annotation: Any = _TYPES[type_name]
        enum = descriptor.get("enum")
        if enum:
            annotation = Literal[tuple(enum)]

        constraints: dict[str, Any] = {}
        if "description" in descriptor:
            constraints["description"] = descriptor["description"]
        if "minimum" in descriptor:
            constraints["ge"] = descriptor["minimum"]
        if "maximum" in descriptor:
            constraints["le"] = descriptor["maximum"]
        if type_name == "string" and descriptor.get("required", False) and not enum:
            constraints["min_length"] = 1

        if descriptor.get("required", False):
            definitions[field_name] = (annotation, Field(..., **constraints))
        else:
            definitions[field_name] = (annotation | None, Field(default=descriptor.get("default"), **constraints))

    model_name = "".join(part.capitalize() for part in tool_name.replace("-", "_").split("_")) + "Input"
    return create_model(
        model_name,
        __config__=ConfigDict(extra="forbid"),
        **definitions,
    )
