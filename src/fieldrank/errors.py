"""Exception hierarchy for fieldrank."""


class FieldRankError(Exception):
    """Base class for all fieldrank errors."""


class SchemaError(FieldRankError, ValueError):
    """Invalid field schema or ranking parameter."""


class UnknownFieldError(FieldRankError, KeyError):
    """A field name that the schema does not define."""

    def __init__(self, field: str):
        super().__init__(field)
        self.field = field

    def __str__(self) -> str:
        return f"unknown field: {self.field!r}"


class DocumentNotFoundError(FieldRankError, KeyError):
    """A path that has never been indexed (or was removed)."""

    def __init__(self, path: str):
        super().__init__(path)
        self.path = path

    def __str__(self) -> str:
        return f"document not indexed: {self.path!r}"


class DocumentParseError(FieldRankError):
    """A file could not be turned into indexable fields."""


class SnapshotError(FieldRankError):
    """An index snapshot could not be read or written."""
