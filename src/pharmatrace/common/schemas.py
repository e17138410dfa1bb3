"""Shared Pydantic helpers for PharmaTrace."""

from typing import Any

from pydantic import BaseModel, ValidationError as PydanticValidationError

from pharmatrace.common.exceptions import ValidationError


def parse_input(schema: type[BaseModel], data: Any) -> Any:
    """Validate ``data`` against ``schema``, raising our ValidationError with field details."""
    if isinstance(data, schema):
        return data
    try:
        return schema.model_validate(data)
    except PydanticValidationError as exc:
        errors = [
            f"{'.'.join(str(p) for p in err['loc']) or 'input'}: {err['msg']}"
            for err in exc.errors()
        ]
        raise ValidationError(f"Invalid {schema.__name__} input", errors=errors) from None
