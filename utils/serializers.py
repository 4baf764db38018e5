import json
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


def decimal_default_serializer(obj):
    if isinstance(obj, Decimal):
        return float(obj)
    if isinstance(obj, (datetime, date)):
        return obj.isoformat()
    if isinstance(obj, UUID):
        return str(obj)
    if isinstance(obj, Enum):
        return obj.value
    raise TypeError(f"Object of type {obj.__class__.__name__} is not JSON serializable")


def dumps(obj) -> str:
    return json.dumps(obj, default=decimal_default_serializer)
