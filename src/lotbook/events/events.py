"""
Ledger events - Pydantic models validated against JSON Schema contracts.

Architecture:
    JSON Schema (*.v1.json) <- wire contract shared with subscribers
         |
    Pydantic Event <- Python implementation with automatic validation
         |
    Event Bus

Design Principles:
- Envelope and payload validated separately
- Schemas cached and pre-compiled
- UTC timezone-aware timestamps (RFC3339 with Z)
- Decimals travel as strings
- event_type matches schema base name

Payloads carry ledger models already dumped to JSON-compatible dicts
(``model_dump(mode="json")``), so this module has no dependency on the
ledger service.
"""

import json
from datetime import datetime, timezone
from functools import lru_cache
from importlib import resources
from typing import Any, ClassVar, Optional
from uuid import uuid4

import jsonschema
from jsonschema import Draft202012Validator, FormatChecker
from pydantic import BaseModel, Field, field_serializer, field_validator, model_validator

# Envelope field names (excluded from payload validation)
RESERVED_ENVELOPE_KEYS = {
    "event_id",
    "event_type",
    "event_version",
    "occurred_at",
    "correlation_id",
    "causation_id",
    "source_service",
}

SCHEMA_PACKAGE = "lotbook.contracts.schemas"


@lru_cache(maxsize=64)
def load_and_compile_schema(schema_name: str) -> Draft202012Validator:
    """
    Load and compile a JSON Schema validator from package data.

    Args:
        schema_name: Schema path relative to the schema package
            (e.g., "ledger/position_update.v1.json")

    Returns:
        Pre-compiled validator with format checker

    Raises:
        FileNotFoundError: If the schema file doesn't exist
    """
    try:
        schema_file = resources.files(SCHEMA_PACKAGE).joinpath(schema_name)
        with schema_file.open("r", encoding="utf-8") as f:
            schema = json.load(f)
    except FileNotFoundError:
        raise FileNotFoundError(f"Schema not found: {schema_name} in package {SCHEMA_PACKAGE}")

    return Draft202012Validator(schema, format_checker=FormatChecker())


@lru_cache(maxsize=1)
def load_envelope_schema() -> Draft202012Validator:
    return load_and_compile_schema("envelope.v1.json")


def _rfc3339(dt: datetime) -> str:
    return dt.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


class BaseEvent(BaseModel):
    """
    Base for all events - provides envelope fields only.
    Every event (including control events) validates its envelope.
    """

    event_id: str = Field(default_factory=lambda: str(uuid4()))
    event_type: str = "base"
    event_version: int = Field(default=1, description="Schema major version")
    occurred_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), description="UTC timestamp RFC3339"
    )
    correlation_id: Optional[str] = None
    causation_id: Optional[str] = None
    source_service: str = "unknown"

    model_config = {"frozen": True, "extra": "forbid"}

    @field_validator("occurred_at", mode="before")
    @classmethod
    def ensure_utc(cls, v: Any) -> datetime:
        """Parse ISO strings and normalize to UTC."""
        if isinstance(v, str):
            dt = datetime.fromisoformat(v.replace("Z", "+00:00"))
        elif isinstance(v, datetime):
            dt = v
        else:
            raise ValueError(f"Cannot parse datetime from {type(v)}: {v}")

        if dt.tzinfo is None:
            return dt.replace(tzinfo=timezone.utc)
        return dt.astimezone(timezone.utc)

    @field_serializer("occurred_at")
    def _serialize_occurred_at(self, v: datetime) -> str:
        return _rfc3339(v)

    @model_validator(mode="after")
    def _validate_envelope(self) -> "BaseEvent":
        """Validate envelope fields against envelope.v1.json (None optionals dropped)."""
        envelope_data: dict[str, Any] = {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "event_version": self.event_version,
            "occurred_at": _rfc3339(self.occurred_at),
            "source_service": self.source_service,
        }
        if self.correlation_id is not None:
            envelope_data["correlation_id"] = self.correlation_id
        if self.causation_id is not None:
            envelope_data["causation_id"] = self.causation_id

        try:
            load_envelope_schema().validate(envelope_data)
        except jsonschema.ValidationError as e:
            raise ValueError(
                f"{self.__class__.__name__} envelope validation failed (envelope.v1.json): {e.message}\n"
                f"Path: {list(e.path)}"
            )
        return self


class ValidatedEvent(BaseEvent):
    """
    Base for domain events validated against a payload schema.

    Subclasses set SCHEMA_BASE (e.g. "ledger/position_update"); the
    event_type must equal its last path segment.
    """

    SCHEMA_BASE: ClassVar[Optional[str]] = None

    @model_validator(mode="after")
    def _validate_payload(self) -> "ValidatedEvent":
        """
        Validate payload fields against {SCHEMA_BASE}.v{event_version}.json.

        Raises:
            ValueError: If validation fails, with full error context
        """
        if self.SCHEMA_BASE is None:
            raise ValueError(f"{self.__class__.__name__} must specify SCHEMA_BASE")

        contract_name = self.SCHEMA_BASE.split("/")[-1]
        if self.event_type != contract_name:
            raise ValueError(
                f"{self.__class__.__name__}: event_type '{self.event_type}' must equal contract name "
                f"'{contract_name}' (from SCHEMA_BASE '{self.SCHEMA_BASE}')"
            )

        payload = {k: v for k, v in self.model_dump().items() if k not in RESERVED_ENVELOPE_KEYS}
        schema_file = f"{self.SCHEMA_BASE}.v{self.event_version}.json"

        try:
            load_and_compile_schema(schema_file).validate(payload)
        except FileNotFoundError as e:
            raise ValueError(f"{self.__class__.__name__}: Schema not found: {schema_file}") from e
        except jsonschema.ValidationError as e:
            raise ValueError(
                f"{self.__class__.__name__} payload validation failed against {schema_file}: {e.message}\n"
                f"Path: {list(e.path)}\n"
                f"Failed value: {e.instance}"
            )
        return self


class ControlEvent(BaseEvent):
    """Lifecycle event: envelope validation only, no payload schema."""


# ============================================
# Ledger Events
# ============================================


class PositionUpdateEvent(ValidatedEvent):
    """
    Published after each successfully applied transaction event.

    Attributes:
        position_key: "wallet_id:token_address"
        transaction_pnl: The TransactionPnL record produced (JSON form)
        position: Position after the mutation (JSON form)

    Example:
        >>> event = PositionUpdateEvent(
        ...     source_service="ledger_service",
        ...     position_key="w1:0xtoken",
        ...     transaction_pnl=record.model_dump(mode="json"),
        ...     position=position.model_dump(mode="json"),
        ... )
    """

    SCHEMA_BASE: ClassVar[Optional[str]] = "ledger/position_update"
    event_type: str = "position_update"

    position_key: str
    transaction_pnl: dict[str, Any]
    position: dict[str, Any]


class PriceUpdateEvent(ValidatedEvent):
    """
    Published after a price tick recomputed a position.

    Only price-derived fields of the position can differ from the previous
    update for the same key.
    """

    SCHEMA_BASE: ClassVar[Optional[str]] = "ledger/price_update"
    event_type: str = "price_update"

    position_key: str
    position: dict[str, Any]


class LedgerRejectionEvent(ValidatedEvent):
    """
    Audit trail entry for an inbound event the ledger refused.

    Attributes:
        source_tx_id: Transaction id of the rejected event (if it had one)
        position_key: Key the event targeted (if it could be determined)
        reason: Human-readable rejection reason
        error_type: Exception class name (InvalidEvent, InsufficientLots, ...)
    """

    SCHEMA_BASE: ClassVar[Optional[str]] = "ledger/ledger_rejection"
    event_type: str = "ledger_rejection"

    source_tx_id: Optional[str] = None
    position_key: Optional[str] = None
    reason: str
    error_type: str


class LedgerReadyEvent(ControlEvent):
    """Published once startup reconstruction finished and live events are accepted."""

    event_type: str = "ledger_ready"

    rebuilt_keys: int = 0
    failed_keys: list[str] = Field(default_factory=list)


class SnapshotCreatedEvent(ValidatedEvent):
    """Published after a portfolio or wallet snapshot was stored."""

    SCHEMA_BASE: ClassVar[Optional[str]] = "ledger/snapshot_created"
    event_type: str = "snapshot_created"

    snapshot: dict[str, Any]
