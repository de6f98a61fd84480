"""
Exclusion rules.

Some paths must never be intercepted by the login flow: API endpoints,
cron entry points, health checks. Each rule names a path fragment and what
to do with a matching request (let it through untouched, or refuse it).
"""

import json
import logging
from enum import Enum
from pathlib import Path
from typing import Iterable, List, Optional

from pydantic import BaseModel, Field, ValidationError, field_validator

logger = logging.getLogger(__name__)


class ExclusionAction(str, Enum):
    ALLOW = "allow"
    DENY = "deny"


class ExclusionRule(BaseModel):
    """Path fragment that bypasses the login flow."""

    name: str = ""
    path: str = Field(..., min_length=1)
    action: ExclusionAction = ExclusionAction.ALLOW
    is_active: bool = True

    @field_validator("path")
    @classmethod
    def strip_path(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("Exclusion path cannot be blank")
        return v

    def matches(self, path: str) -> bool:
        return self.is_active and self.path in path


class ExclusionRules:
    """Ordered rule list; the first matching rule wins."""

    def __init__(self, rules: Optional[Iterable[ExclusionRule]] = None):
        self._rules: List[ExclusionRule] = list(rules or [])

    @classmethod
    def from_file(cls, path: str) -> "ExclusionRules":
        file_path = Path(path)
        if not file_path.exists():
            return cls()
        try:
            with open(file_path, "r") as f:
                entries = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.error(f"Error loading exclusion file {file_path}: {e}")
            return cls()

        rules = []
        for entry in entries if isinstance(entries, list) else []:
            try:
                rules.append(ExclusionRule.model_validate(entry))
            except ValidationError as e:
                logger.error(f"Skipping invalid exclusion rule: {e.error_count()} error(s)")
        logger.info(f"Loaded {len(rules)} exclusion rule(s) from {file_path}")
        return cls(rules)

    def match(self, path: str) -> Optional[ExclusionRule]:
        for rule in self._rules:
            if rule.matches(path):
                return rule
        return None

    def __len__(self) -> int:
        return len(self._rules)
