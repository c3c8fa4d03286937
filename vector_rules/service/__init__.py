"""
Service layer: rule retrieval/writes and rule type management.
"""

from vector_rules.service.rule_service import RuleService, content_to_text
from vector_rules.service.rule_type_service import RuleTypeService

__all__ = [
    "RuleService",
    "RuleTypeService",
    "content_to_text",
]
