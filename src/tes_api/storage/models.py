"""Storage models shared by API and persistence backends."""

from datetime import datetime

from pydantic import BaseModel

from tes_api.app.models import Task


class TaskRecord(BaseModel):
    """Persisted task plus its position in creation order."""

    seq: int
    task: Task
    created_at: datetime
    updated_at: datetime
