"""
Input models for connection and configuration mutations.

Pydantic errors are converted into the pipeline's ValidationError so callers
only ever deal with one error taxonomy.
"""

from typing import Any, Dict, List, Mapping, Optional, Type, TypeVar, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field, AliasChoices, field_validator

from ..errors import ValidationError
from .types import TransactionType

M = TypeVar("M", bound="StrictInput")


def _describe_errors(exc: pydantic.ValidationError) -> List[Dict[str, Any]]:
    # Pydantic echoes offending input values, which may include passwords
    return [
        {"field": ".".join(str(part) for part in err["loc"]), "error": err["msg"]}
        for err in exc.errors()
    ]


class StrictInput(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="forbid", str_strip_whitespace=True)

    @classmethod
    def parse(cls: Type[M], data: Union[M, Mapping[str, Any]]) -> M:
        if isinstance(data, cls):
            return data
        try:
            return cls.model_validate(dict(data))
        except pydantic.ValidationError as e:
            raise ValidationError(f"Invalid {cls.__name__}", {"errors": _describe_errors(e)}) from None


class TargetConnectionParams(StrictInput):
    """Everything needed to reach a target database."""

    host: str = Field(min_length=1, max_length=255)
    port: int = Field(ge=1, le=65535)
    database: str = Field(min_length=1, max_length=255)
    username: str = Field(min_length=1, max_length=255)
    password: str = Field(min_length=1, max_length=1024, repr=False)
    use_tls: bool = Field(default=False, validation_alias=AliasChoices("use_tls", "ssl"))


class TargetConnectionPatch(StrictInput):
    """Partial update; only fields that were provided are applied."""

    host: Optional[str] = Field(default=None, min_length=1, max_length=255)
    port: Optional[int] = Field(default=None, ge=1, le=65535)
    database: Optional[str] = Field(default=None, min_length=1, max_length=255)
    username: Optional[str] = Field(default=None, min_length=1, max_length=255)
    password: Optional[str] = Field(default=None, min_length=1, max_length=1024, repr=False)
    use_tls: Optional[bool] = Field(default=None, validation_alias=AliasChoices("use_tls", "ssl"))
    is_active: Optional[bool] = None

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True).items() if v is not None}


class IndexingConfigCreate(StrictInput):
    name: str = Field(min_length=1, max_length=200)
    enabled_types: List[TransactionType] = Field(default_factory=list)
    custom_addresses: List[str] = Field(default_factory=list)

    @field_validator("custom_addresses")
    @classmethod
    def _strip_addresses(cls, value: List[str]) -> List[str]:
        return _clean_addresses(value)


class IndexingConfigPatch(StrictInput):
    """Partial update; unset fields are left untouched, not nulled."""

    name: Optional[str] = Field(default=None, min_length=1, max_length=200)
    enabled_types: Optional[List[TransactionType]] = None
    custom_addresses: Optional[List[str]] = None
    is_active: Optional[bool] = None

    @field_validator("custom_addresses")
    @classmethod
    def _strip_addresses(cls, value: Optional[List[str]]) -> Optional[List[str]]:
        if value is None:
            return None
        return _clean_addresses(value)

    def changes(self) -> Dict[str, Any]:
        return {k: v for k, v in self.model_dump(exclude_unset=True, mode="json").items() if v is not None}


def _clean_addresses(addresses: List[str]) -> List[str]:
    """Strip blanks and drop duplicates while keeping the caller's order."""
    seen = set()
    cleaned = []
    for address in addresses:
        address = address.strip()
        if address and address not in seen:
            seen.add(address)
            cleaned.append(address)
    return cleaned
