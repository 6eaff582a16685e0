from __future__ import annotations


class ORMError(Exception):
    """Base class for every error raised by sqla_repository."""


class EntityMetadataNotFound(ORMError):
    def __init__(self, entity_name: str) -> None:
        self.entity_name = entity_name
        super().__init__(f"Entity metadata not found for {entity_name}")


class ColumnNotFound(ORMError):
    def __init__(self, column_name: str, entity_name: str) -> None:
        self.column_name = column_name
        self.entity_name = entity_name
        super().__init__(f'Column "{column_name}" not found in entity "{entity_name}".')


class UnsupportedQueryOperator(ORMError):
    def __init__(self, operator: str) -> None:
        self.operator = operator
        super().__init__(f'Unsupported query operator: "{operator}".')


class SoftDeleteNotSupported(ORMError):
    def __init__(self, entity_name: str) -> None:
        self.entity_name = entity_name
        super().__init__(f'Entity "{entity_name}" does not support soft delete restoration.')
