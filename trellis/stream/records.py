"""
DynamoDB Streams record parsing.

Records arrive in the Lambda event shape:

    {
        "eventID": "...",
        "eventName": "INSERT" | "MODIFY" | "REMOVE",
        "eventSourceARN": "arn:aws:dynamodb:...:table/studios/stream/...",
        "dynamodb": {"Keys": {...}, "OldImage": {...}, "NewImage": {...}},
    }

Images use the AttributeValue JSON shape; binary values are base64 text.
"""

from __future__ import annotations

import base64
from dataclasses import dataclass, field
from typing import Any

from ..dynamo.attributes import AttributeMap, get_int, get_string, get_string_list

EVENT_INSERT = "INSERT"
EVENT_MODIFY = "MODIFY"
EVENT_REMOVE = "REMOVE"

# Principal recorded on deletes performed by DynamoDB's TTL sweeper
TTL_SERVICE_PRINCIPAL = "dynamodb.amazonaws.com"


def get_string_attr(image: AttributeMap | None, key: str) -> str:
    return get_string(image, key)


def get_number_attr(image: AttributeMap | None, key: str) -> int:
    """Integer value of a number attribute; 0 when missing or unparseable."""
    return get_int(image, key) or 0


def get_string_list_attr(image: AttributeMap | None, key: str) -> list[str]:
    return get_string_list(image, key)


def convert_stream_key(stream_key: AttributeMap | None) -> AttributeMap:
    """Convert a stream record key into a key usable in client requests.

    Only S, N and B members are kept (the only valid key types). Binary
    values are decoded from base64 text.
    """
    result: AttributeMap = {}
    for name, value in (stream_key or {}).items():
        if "S" in value:
            result[name] = {"S": value["S"]}
        elif "N" in value:
            result[name] = {"N": value["N"]}
        elif "B" in value:
            raw = value["B"]
            result[name] = {"B": base64.b64decode(raw) if isinstance(raw, str) else raw}
    return result


@dataclass
class ChangeEvent:
    """One change stream record.

    Attributes:
        event_id: Unique record id
        event_name: INSERT, MODIFY or REMOVE
        keys: Primary key of the changed item
        old_image: Item before the change ({} for INSERT)
        new_image: Item after the change ({} for REMOVE)
        event_source_arn: Stream ARN
        sequence_number: Position within the shard
        user_identity: Set on deletes performed by the TTL sweeper
    """

    event_id: str
    event_name: str
    keys: AttributeMap = field(default_factory=dict)
    old_image: AttributeMap = field(default_factory=dict)
    new_image: AttributeMap = field(default_factory=dict)
    event_source_arn: str = ""
    sequence_number: str = ""
    user_identity: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> ChangeEvent:
        change = record.get("dynamodb") or {}
        return cls(
            event_id=record.get("eventID", ""),
            event_name=record.get("eventName", ""),
            keys=convert_stream_key(change.get("Keys")),
            old_image=change.get("OldImage") or {},
            new_image=change.get("NewImage") or {},
            event_source_arn=record.get("eventSourceARN", ""),
            sequence_number=change.get("SequenceNumber", ""),
            user_identity=record.get("userIdentity") or {},
        )

    @property
    def table_name(self) -> str:
        """Source table, parsed from the stream ARN ("" if unknown)."""
        _, _, resource = self.event_source_arn.partition(":table/")
        return resource.split("/", 1)[0]

    @property
    def is_ttl_removal(self) -> bool:
        """Whether DynamoDB's TTL sweeper produced this REMOVE."""
        return (
            self.event_name == EVENT_REMOVE
            and self.user_identity.get("principalId") == TTL_SERVICE_PRINCIPAL
        )
