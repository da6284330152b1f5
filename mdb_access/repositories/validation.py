"""
Document validation for repository writes.

Identifier casting and optional JSON Schema checks, both raised as access
layer errors before anything is sent to the store.
"""

from collections.abc import Mapping
from typing import Any

from bson import ObjectId
from bson.errors import InvalidId
from jsonschema import Draft7Validator, SchemaError

from ..constants import ID_FIELD
from ..exceptions import CastError, ConfigurationError, ValidationError


def to_object_id(value: Any) -> ObjectId:
    """
    Cast a document identifier to ObjectId.

    Raises:
        CastError: If the value is not a valid ObjectId or its hex string
    """
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(value)
    except (InvalidId, TypeError) as e:
        raise CastError(
            f"'{value}' is not a valid document identifier",
            value=value,
            target_type="ObjectId",
        ) from e


class SchemaValidator:
    """
    Validates documents against a JSON Schema (draft 7).

    Example:
        validator = SchemaValidator({
            "type": "object",
            "required": ["sku", "qty"],
            "properties": {"qty": {"type": "integer", "minimum": 0}},
        })
        validator.validate({"sku": "A1", "qty": -1})  # raises ValidationError
    """

    def __init__(self, schema: Mapping[str, Any]):
        """
        Raises:
            ConfigurationError: If the schema itself is invalid
        """
        try:
            Draft7Validator.check_schema(schema)
        except SchemaError as e:
            raise ConfigurationError(
                f"Invalid document schema: {e.message}", config_key="schema"
            ) from e
        self.schema = dict(schema)
        self._validator = Draft7Validator(self.schema)

    def validate(self, document: Mapping[str, Any]) -> None:
        """
        Raises:
            ValidationError: Listing every failing path
        """
        errors = sorted(self._validator.iter_errors(document), key=lambda e: list(e.absolute_path))
        if not errors:
            return
        error_paths = [".".join(str(p) for p in e.absolute_path) or "root" for e in errors]
        messages = "; ".join(dict.fromkeys(e.message for e in errors))
        raise ValidationError(
            f"Document failed schema validation: {messages}",
            error_paths=error_paths,
        )


def check_document(document: Any, *, allow_id: bool = False) -> dict[str, Any]:
    """
    Shape checks shared by every write path.

    Returns:
        A shallow copy of the document, safe to stamp

    Raises:
        ValidationError: If the document is not a mapping, or carries ``_id``
            (identifiers are assigned by the store)
    """
    if not isinstance(document, Mapping):
        raise ValidationError(f"Document must be a mapping, got {type(document).__name__}")
    if not allow_id and ID_FIELD in document:
        raise ValidationError(
            "Documents must not carry '_id'; identifiers are assigned on insert",
            error_paths=[ID_FIELD],
        )
    bad_keys = [k for k in document if not isinstance(k, str) or k.startswith("$")]
    if bad_keys:
        raise ValidationError(
            f"Invalid top-level field names: {bad_keys}",
            error_paths=[str(k) for k in bad_keys],
        )
    return dict(document)
