"""
Wire Model Base
===============
Shared pydantic base for every record persisted under .battleloop/.

Python attributes are snake_case; the JSON files use camelCase because the
progress record is also written by the external agent, which is told the
camelCase field names in its prompt.
"""
from datetime import datetime, timezone
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class WireModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_wire(self) -> Dict[str, Any]:
        """JSON-ready dict with camelCase keys."""
        return self.model_dump(mode="json", by_alias=True)
