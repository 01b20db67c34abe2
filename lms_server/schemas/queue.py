"""
Queue inspection models served to the admin dashboard.
"""
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class QueueStats(BaseModel):
    """Point-in-time snapshot of the purchase queue (camelCase on the wire)"""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    queue_length: int
    is_processing: bool
    completed_count: int
    failed_count: int
    completed_ids: List[str]
    failed_ids: List[str]


class JobLookup(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: str  # completed | failed
    result: Optional[Any] = None
    error: Optional[str] = None
