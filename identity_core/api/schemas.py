"""Shared request-model base and pagination envelope.

Request bodies accept both snake_case and the camelCase field names the
browser client sends (displayName, organizationName, ...).
"""

from __future__ import annotations

import math
from typing import Any

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def paginated(data: list[Any], total: int, page: int, page_size: int) -> dict[str, Any]:
    return {
        "data": data,
        "total": total,
        "page": page,
        "page_size": page_size,
        "total_pages": math.ceil(total / page_size) if page_size else 0,
    }
