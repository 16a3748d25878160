"""
EavDB Server - schema-less entity store on top of SQLite.

This package stores arbitrarily shaped records ("entities") of many
resource kinds without a table per record shape:

    ┌──────────────┐     ┌──────────────────┐     ┌────────────────────┐
    │    Caller    │────▶│   EavDriver      │────▶│ ResourceRegistry   │
    │ (CRUD/list)  │     │   (facade)       │     │ name -> id         │
    └──────────────┘     └────────┬─────────┘     └────────────────────┘
                                  │
                 ┌────────────────┼────────────────┐
                 ▼                ▼                ▼
        ┌─────────────────┐ ┌───────────┐ ┌──────────────────┐
        │AttributeRegistry│ │EntityTable│ │ Lock / Usage     │
        │ name -> column  │ │ wide rows │ │ coordination     │
        └─────────────────┘ └─────┬─────┘ └──────────────────┘
                                  ▼
                        ┌───────────────────┐
                        │ SQLite (t_i, v_i) │
                        │ + overflow table  │
                        └───────────────────┘

Invariants:
    - An attribute name keeps its column slot for the lifetime of a kind
    - Column slots are never reused and never exceed the column budget
    - Values longer than the base length live in the overflow table
    - Every mutation evicts the entity cache before and after the write

How to change safely:
    - Never renumber or recycle column slots
    - Keep the number encoding order-preserving (range filters rely on it)
    - Test with several processes sharing one database file
"""

from ._version import __version__

__all__ = ["__version__"]
