from __future__ import annotations

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel, Field


class RuleType(BaseModel):
    id: int
    name: str
    createdAt: datetime
    updatedAt: datetime


class Rule(BaseModel):
    id: int
    ruleTypeId: int
    content: Any
    createdAt: datetime
    updatedAt: datetime
    ruleTypeName: Optional[str] = None
    # Never serialized; only the index and the write path need it.
    embedding: Optional[List[float]] = Field(default=None, exclude=True, repr=False)


class RuleMatch(Rule):
    score: float


class RuleList(BaseModel):
    rules: List[Rule]
    limit: int
    offset: int


class RuleTypeList(BaseModel):
    ruleTypes: List[RuleType]
    limit: int
    offset: int


class MatchList(BaseModel):
    matches: List[RuleMatch]
