from datetime import datetime, timezone

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    # naive UTC, matches what the DateTime columns hand back
    return datetime.now(timezone.utc).replace(tzinfo=None)


def isoformat_z(dt: datetime) -> str:
    return dt.isoformat(timespec="milliseconds") + "Z"


class WireModel(BaseModel):
    """camelCase on the wire, snake_case in Python."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)
