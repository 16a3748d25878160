"""
Error types for EavDB.

This module defines all exception types raised by the store:
- EavDbError: Base exception
- ValueTooLarge: Scalar does not fit the number digit budget
- TooManyColumns: Column budget of a resource kind is exhausted
- DeserializationError: Stored value cannot be decoded
- EntityNotFound / EntityAlreadyExists: Entity lifecycle violations
- LockTimeout: Named lock could not be acquired
- ResourceNotFound: Unknown resource kind (soft)
- StorageError: Storage contention outlived the retry budget

Invariants:
    - All errors inherit from EavDbError
    - Errors include context for debugging
    - Error messages name the offending resource, value or lock
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class EavDbError(Exception):
    """Base exception for all EavDB errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
    """

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "EAVDB_ERROR"
        self.details = details or {}


class ValueTooLarge(EavDbError):
    """A number does not fit the fixed digit budget.

    Raised when:
    - The integer part of a number has more digits than the pad width
    - The number is not finite (inf, nan)
    """

    def __init__(self, value: Any, max_digits: int) -> None:
        super().__init__(
            f"Too large number: {value!r} (max {max_digits} digits)",
            code="VALUE_TOO_LARGE",
            details={"value": repr(value), "max_digits": max_digits},
        )
        self.value = value
        self.max_digits = max_digits


class TooManyColumns(EavDbError):
    """More distinct attribute names than the column budget allows."""

    def __init__(self, resource_name: str, required: int, column_count: int) -> None:
        super().__init__(
            f"Too many columns for resource '{resource_name}': "
            f"{required} required, {column_count} available",
            code="TOO_MANY_COLUMNS",
            details={
                "resource": resource_name,
                "required": required,
                "column_count": column_count,
            },
        )
        self.resource_name = resource_name
        self.required = required
        self.column_count = column_count


class DeserializationError(EavDbError):
    """Stored value cannot be decoded under its type tag."""

    def __init__(self, value: Any, type_name: str) -> None:
        super().__init__(
            f"Failed to deserialize {value!r} as {type_name}",
            code="DESERIALIZATION_ERROR",
            details={"value": repr(value), "type": type_name},
        )
        self.value = value
        self.type_name = type_name


class EntityNotFound(EavDbError):
    """Entity does not exist in the resource."""

    def __init__(self, resource_name: str, entity_id: str) -> None:
        super().__init__(
            f"Entity not found for {entity_id} in '{resource_name}'",
            code="ENTITY_NOT_FOUND",
            details={"resource": resource_name, "id": entity_id},
        )
        self.resource_name = resource_name
        self.entity_id = entity_id


class EntityAlreadyExists(EavDbError):
    """An entity with the same id already exists in the resource."""

    def __init__(self, resource_name: str, entity_id: str) -> None:
        super().__init__(
            f"Entity {entity_id} already exists in '{resource_name}'",
            code="ENTITY_ALREADY_EXISTS",
            details={"resource": resource_name, "id": entity_id},
        )
        self.resource_name = resource_name
        self.entity_id = entity_id


class LockTimeout(EavDbError):
    """Named lock could not be acquired within the retry budget."""

    def __init__(self, name: str, tries: int) -> None:
        super().__init__(
            f"Locked: {name} (gave up after {tries} tries)",
            code="LOCK_TIMEOUT",
            details={"lock": name, "tries": tries},
        )
        self.name = name
        self.tries = tries


class ResourceNotFound(EavDbError):
    """Resource kind is not known to the store.

    The driver treats this as soft: reads return empty results and
    drop is a no-op.
    """

    def __init__(self, resource_name: str) -> None:
        super().__init__(
            f"Resource not found: {resource_name}",
            code="RESOURCE_NOT_FOUND",
            details={"resource": resource_name},
        )
        self.resource_name = resource_name


class StorageError(EavDbError):
    """Storage contention persisted beyond the retry budget."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(
            message,
            code="STORAGE_ERROR",
            details={"attempts": attempts},
        )
        self.attempts = attempts
