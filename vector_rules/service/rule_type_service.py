"""Rule type (category) management."""

from __future__ import annotations

import logging
from typing import List

from vector_rules.errors import InvalidInput
from vector_rules.models import RuleType
from vector_rules.service.rule_service import validate_page
from vector_rules.storage.rule_store import RuleStore

LOG = logging.getLogger("service.rule_type_service")


def _clean_name(name: str) -> str:
    if not isinstance(name, str) or not name.strip():
        raise InvalidInput("rule type name cannot be empty")
    return name.strip()


class RuleTypeService:
    """CRUD for rule types. Names are unique; a type in use cannot be deleted."""

    def __init__(self, store: RuleStore, max_page: int = 100) -> None:
        self._store = store
        self._max_page = max_page

    def create_rule_type(self, name: str) -> RuleType:
        return self._store.create_rule_type(_clean_name(name))

    def get_rule_type(self, rule_type_id: int) -> RuleType:
        return self._store.get_rule_type(rule_type_id)

    def update_rule_type(self, rule_type_id: int, name: str) -> RuleType:
        # Vectors are filed under the type id, so a rename needs no re-indexing.
        return self._store.update_rule_type(rule_type_id, _clean_name(name))

    def delete_rule_type(self, rule_type_id: int) -> None:
        self._store.get_rule_type(rule_type_id)
        in_use = self._store.count_rules_for_type(rule_type_id)
        if in_use:
            raise InvalidInput(
                f"rule type {rule_type_id} is still referenced by {in_use} rule(s)"
            )
        self._store.delete_rule_type(rule_type_id)

    def list_rule_types(self, limit: int = 10, offset: int = 0) -> List[RuleType]:
        validate_page(limit, offset, self._max_page)
        return self._store.list_rule_types(limit=limit, offset=offset)
