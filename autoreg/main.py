from __future__ import annotations

import json
import logging
import os

import uvicorn


class JsonFormatter(logging.Formatter):
    """One JSON object per log line."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data, ensure_ascii=False)


def setup_logging(log_level: str = "INFO") -> None:
    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    root_logger.addHandler(handler)
    root_logger.setLevel(getattr(logging, log_level.upper(), logging.INFO))


def main() -> None:
    log_level = os.getenv("AUTOREG_LOG_LEVEL", "INFO")
    setup_logging(log_level)
    host = os.getenv("AUTOREG_HOST", "127.0.0.1")
    port = int(os.getenv("AUTOREG_PORT", "8080"))
    # uvicorn logs through the root handler installed above.
    uvicorn.run("autoreg.web_admin:app", host=host, port=port, reload=False, log_config=None, log_level=log_level.lower())


if __name__ == "__main__":
    main()
