"""
Wire models for webhook batches delivered by Helius.
"""

from typing import Any, Dict, List

from pydantic import BaseModel, ConfigDict, Field, AliasChoices


class TransactionEvent(BaseModel):
    """One transaction inside a webhook batch.

    ``type`` is kept as a plain string: unknown types are rejected per event by
    the insert builder instead of failing the whole batch at parse time.
    ``data`` is untrusted and only assumed to be a flat mapping.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: str
    signature: str
    slot: int = 0
    timestamp: int = Field(description="Milliseconds since the Unix epoch")
    data: Dict[str, Any] = Field(
        default_factory=dict,
        validation_alias=AliasChoices("data", "payload"),
    )
    accounts: List[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("accounts", "accountAddresses"),
        description="Addresses the transaction touches, matched against custom addresses",
    )


class WebhookBatch(BaseModel):
    """One webhook delivery for a single owner.

    Items stay raw mappings here and are parsed one by one during ingestion,
    so a single malformed transaction cannot reject the rest of the batch.
    """

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    transactions: List[Dict[str, Any]] = Field(
        default_factory=list,
        validation_alias=AliasChoices("transactions", "events"),
    )

    @classmethod
    def from_payload(cls, payload: Any) -> "WebhookBatch":
        """Accept ``{"transactions": [...]}``, ``{"events": [...]}`` or a bare list."""
        if isinstance(payload, list):
            return cls(transactions=payload)
        return cls.model_validate(payload)
