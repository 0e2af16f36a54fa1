from datetime import datetime

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from seatsync.clock import isoformat


class CamelModel(BaseModel):
    """Wire models use camelCase; Python code uses the snake_case field names."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def dump_datetime(value: datetime) -> str:
    return isoformat(value)
