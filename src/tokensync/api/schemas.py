"""Shared response/request model base for the HTTP API."""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    """Base model serializing to camelCase keys while accepting snake_case input."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def validate_address(v: str) -> str:
    """Validate an Ethereum address and lower-case it."""
    if not v.startswith("0x") or len(v) != 42:
        raise ValueError("Address must be 0x followed by 40 hex characters")
    try:
        int(v[2:], 16)
    except ValueError:
        raise ValueError("Address must contain valid hexadecimal characters")
    return v.lower()
