from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class NotificationType(str, Enum):
    success = "success"
    error = "error"
    info = "info"


class Notification(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    type: NotificationType
    title: str
    message: str
    created_at: datetime

    def to_json(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)
