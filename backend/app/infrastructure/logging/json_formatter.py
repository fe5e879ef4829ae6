import json
import logging
from datetime import UTC, datetime

from app.infrastructure.logging.context import get_request_id, get_task_id


class JsonLogFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.now(UTC).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        request_id = get_request_id()
        if request_id:
            payload["request_id"] = request_id
        task_id = get_task_id()
        if task_id:
            payload["task_id"] = task_id
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)
