"""
Shared API schema helpers.

Request bodies accept both snake_case and camelCase keys (mobile clients
send camelCase). Responses use the {"success": true, "data": ...} envelope.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def envelope(data: Any, **extra) -> dict[str, Any]:
    return {"success": True, "data": data, **extra}
