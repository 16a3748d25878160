"""
Serialization codec for EavDB.

This module converts native values to the strings stored in the fixed
width v_i columns (and back), and flattens nested attribute sets into
flat (path, scalar) pairs:
- Type tags for the closed set of logical types
- Order-preserving number and date encoding
- msgpack encoding for objects, blobs and overflow payloads
- flatten()/expand() for dotted and bracketed attribute names

Invariants:
    - deserialize(serialize(v), type_of(v)) == v for representable values
    - serialize(a) < serialize(b) for numbers a < b
    - flatten() and expand() are inverse for non-empty nested values

How to change safely:
    - Never change the number encoding of an existing database
    - New types need a new tag; never renumber existing tags
"""

from .flatten import expand, flatten, format_path, parse_path, root_of
from .serializer import (
    NUMBER_DIGITS,
    deserialize,
    epoch_millis,
    pack,
    serialize,
    truncate,
    unpack,
)
from .types import (
    AS_KEY,
    AT_KEY,
    ID_KEY,
    NUM_KEY,
    REF_KEY,
    DataType,
    Entity,
    EntityId,
    is_ref,
    type_of,
)

__all__ = [
    # Types
    "DataType",
    "Entity",
    "EntityId",
    "is_ref",
    "type_of",
    "ID_KEY",
    "NUM_KEY",
    "AT_KEY",
    "AS_KEY",
    "REF_KEY",
    # Codec
    "NUMBER_DIGITS",
    "serialize",
    "deserialize",
    "epoch_millis",
    "pack",
    "unpack",
    "truncate",
    # Paths
    "flatten",
    "expand",
    "parse_path",
    "format_path",
    "root_of",
]
