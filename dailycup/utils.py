from datetime import datetime, timezone
from typing import Any
import json


def now_utc() -> datetime:
    """Naive UTC timestamp; every DateTime column stores naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def dumps(data: Any) -> str:
    return json.dumps(data, default=str, ensure_ascii=False)


def loads(raw: str | None) -> Any:
    if not raw:
        return None
    try:
        return json.loads(raw)
    except ValueError:
        return {"raw": raw}
