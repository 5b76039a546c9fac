"""
Change stream processing for Trellis.

This package turns DynamoDB Streams records into cascade deletes:
- records: parsing of Lambda / Streams record payloads
- cascade: the CascadeHandler state machine

Invariants:
    - Processing a record twice has the same effect as processing it once
    - Records are handled in delivery order within a batch
"""

from .cascade import CascadeHandler, CascadeState, cascade_state
from .records import (
    EVENT_INSERT,
    EVENT_MODIFY,
    EVENT_REMOVE,
    ChangeEvent,
    convert_stream_key,
    get_number_attr,
    get_string_attr,
    get_string_list_attr,
)

__all__ = [
    # Cascade
    "CascadeHandler",
    "CascadeState",
    "cascade_state",
    # Records
    "ChangeEvent",
    "EVENT_INSERT",
    "EVENT_MODIFY",
    "EVENT_REMOVE",
    "convert_stream_key",
    "get_string_attr",
    "get_number_attr",
    "get_string_list_attr",
]
