"""
Index materialisation.

Creates the declared indexes of a collection on the server. An existing
index with the same name but a different definition is dropped and
recreated; the implicit ``_id`` index is never touched.
"""

import logging
from collections.abc import Iterable
from typing import Any

from ..database.errors import map_store_errors
from ..exceptions import ValidationError
from .definitions import IndexDefinition
from .helpers import is_id_index, normalize_keys

logger = logging.getLogger(__name__)


def _matches_existing(definition: IndexDefinition, existing: dict[str, Any]) -> bool:
    existing_keys = [(f, int(d)) for f, d in normalize_keys(existing.get("key", []))]
    if existing_keys != list(definition.keys):
        return False
    if bool(existing.get("unique", False)) != definition.unique:
        return False
    return (existing.get("partialFilterExpression") or None) == (definition.partial_filter or None)


async def ensure_indexes(collection: Any, definitions: Iterable[IndexDefinition]) -> list[str]:
    """
    Make sure every definition exists on the collection.

    Args:
        collection: AsyncIOMotorCollection
        definitions: Declared indexes

    Returns:
        Names of the indexes created (or recreated) by this call
    """
    collection_name = getattr(collection, "name", None)
    log_prefix = f"[{collection_name}]"

    pending: list[IndexDefinition] = []
    seen_names: set[str] = set()
    for definition in definitions:
        if is_id_index(list(definition.keys)):
            continue
        if definition.name in seen_names:
            raise ValidationError(f"Index name '{definition.name}' declared twice")
        seen_names.add(definition.name)
        pending.append(definition)

    if not pending:
        return []

    with map_store_errors("ensure_indexes", collection=collection_name):
        existing = await collection.index_information()

        to_create: list[IndexDefinition] = []
        for definition in pending:
            current = existing.get(definition.name)
            if current is None:
                to_create.append(definition)
                continue
            if _matches_existing(definition, current):
                logger.debug(f"{log_prefix} Index '{definition.name}' matches; skipping.")
                continue
            logger.warning(
                f"{log_prefix} Index '{definition.name}' definition mismatch. "
                f"Existing: keys={current.get('key')}, unique={current.get('unique', False)}, "
                f"filter={current.get('partialFilterExpression')}. "
                f"Expected: keys={list(definition.keys)}, unique={definition.unique}, "
                f"filter={definition.partial_filter}. Dropping existing index and recreating."
            )
            await collection.drop_index(definition.name)
            to_create.append(definition)

        if not to_create:
            return []

        created = await collection.create_indexes([d.to_index_model() for d in to_create])

    logger.info(f"{log_prefix} Created indexes: {', '.join(created)}")
    return list(created)
