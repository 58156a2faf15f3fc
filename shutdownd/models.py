from __future__ import annotations

import json
from enum import IntEnum
from typing import Any, Dict, List, Tuple

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictInt, StrictStr, ValidationError

from .errors import InvalidSchema, MalformedMessage


class PowerType(IntEnum):
    UTILITY = 1
    GENERATOR = 2
    BATTERY = 3
    SOLAR = 4
    UNKNOWN = 5
    OTHER = 6


class Scope:
    GLOBAL = "global"
    LOCAL = "local"
    SINGLE_PHASE = "1p"
    ONE_CIRCUIT = "1c"

    ALL = frozenset({GLOBAL, LOCAL, SINGLE_PHASE, ONE_CIRCUIT})


class PowerEvent(BaseModel):
    """
    One message from the power alarms channel.

    Wire shape: {"up": bool, "type": int, "scope": str}. Absent or null keys
    take their zero value; keys of the wrong JSON type make the message
    malformed.
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True, extra="ignore")

    online: StrictBool = Field(default=False, alias="up", description="Whether this power source is available")
    power_type: StrictInt = Field(default=0, alias="type", description="PowerType value, 1..6")
    scope: StrictStr = Field(default="", description="Locality label, e.g. global or 1p")

    def is_valid(self) -> bool:
        return PowerType.UTILITY <= self.power_type <= PowerType.OTHER

    def policy_vars(self) -> Dict[str, Any]:
        return {
            "powerType": self.power_type,
            "online": self.online,
            "scope": self.scope,
        }

_WIRE_KEYS = frozenset({"up", "type", "scope"})


class _WireObject:
    """A decoded JSON object, kept as its key/value pairs in document order."""

    __slots__ = ("pairs",)

    def __init__(self, pairs: List[Tuple[str, Any]]) -> None:
        self.pairs = pairs


def _fold_keys(pairs: List[Tuple[str, Any]]) -> Dict[str, Any]:
    # Keys match their wire name case-insensitively; a later key overrides
    # an earlier one and a null leaves the field as it was.
    folded: Dict[str, Any] = {}
    for key, value in pairs:
        name = key.lower()
        if name in _WIRE_KEYS and value is not None:
            folded[name] = value
    return folded


def validate(raw: bytes | str, *, validate_scope: bool = False) -> PowerEvent:
    """
    Decode and check one inbound payload.

    Raises MalformedMessage when the payload is not a JSON object of the
    expected shape, InvalidSchema when powerType is outside the enumeration
    (or, with validate_scope, when scope is not one of the known labels).
    A JSON null payload or field counts as absent.
    """
    try:
        doc = json.loads(raw, object_pairs_hook=_WireObject)
    except ValueError as e:
        raise MalformedMessage(f"failed to unmarshal message: {e}") from e
    if doc is None:
        doc = {}
    elif isinstance(doc, _WireObject):
        doc = _fold_keys(doc.pairs)

    try:
        event = PowerEvent.model_validate(doc)
    except ValidationError as e:
        raise MalformedMessage(f"failed to unmarshal message: {e.errors(include_url=False)}") from e

    if not event.is_valid():
        raise InvalidSchema(f"powerType {event.power_type} is not a known power type")
    if validate_scope and event.scope not in Scope.ALL:
        raise InvalidSchema(f"scope {event.scope!r} is not a known scope")
    return event
