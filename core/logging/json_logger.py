import json
import logging
import os
from logging.handlers import HTTPHandler

LOG_LEVEL = os.getenv('LOG_LEVEL', 'INFO').upper()
SIEM_ENDPOINT = os.getenv('SIEM_ENDPOINT')

# Optional record attributes copied into the payload when present
_EXTRA_FIELDS = ('arn', 'command')


class JSONFormatter(logging.Formatter):
    def format(self, record):
        payload = {
            "timestamp": self.formatTime(record),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        for field in _EXTRA_FIELDS:
            value = getattr(record, field, None)
            if value is not None:
                payload[field] = value
        if record.exc_info:
            payload['exc_info'] = self.formatException(record.exc_info)
        return json.dumps(payload)


def configure_json_logging(siem_endpoint: str | None = SIEM_ENDPOINT, level=LOG_LEVEL, stream=None):
    """Send root logger output as JSON lines to `stream` (stderr by default)."""
    logger = logging.getLogger()
    logger.setLevel(level)

    for h in list(logger.handlers):
        if isinstance(h.formatter, JSONFormatter):
            logger.removeHandler(h)

    handler = logging.StreamHandler(stream)
    handler.setFormatter(JSONFormatter())
    logger.addHandler(handler)

    if siem_endpoint:
        # siem_endpoint format: host:port
        http = HTTPHandler(siem_endpoint, '/ingest', method='POST')
        http.setFormatter(JSONFormatter())
        logger.addHandler(http)

    return logger
