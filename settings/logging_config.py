from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from logging.config import dictConfig
from typing import Any, Dict, Optional

from settings.config import settings

# Attributes every LogRecord carries; anything else arrived through ``extra=``.
_RECORD_FIELDS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def record_fields(record: logging.LogRecord) -> Dict[str, Any]:
	return {k: v for k, v in vars(record).items() if k not in _RECORD_FIELDS and not k.startswith("_")}


class JsonFormatter(logging.Formatter):
	"""One JSON object per line; ``extra`` fields (file_id, submission_id, ...) become top-level keys."""

	def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
		payload: Dict[str, Any] = {
			"ts": datetime.now(timezone.utc).isoformat(),
			"level": record.levelname,
			"logger": record.name,
			"msg": record.getMessage(),
		}
		payload.update(record_fields(record))
		if record.exc_info:
			payload["exc"] = self.formatException(record.exc_info)
		return json.dumps(payload, ensure_ascii=False, default=str)


class KeyValueFormatter(logging.Formatter):
	"""Human-readable console lines with the ``extra`` fields appended as key=value."""

	def format(self, record: logging.LogRecord) -> str:  # type: ignore[override]
		line = super().format(record)
		fields = record_fields(record)
		if fields:
			line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
		return line


def configure_logging(level: Optional[int] = None, json_output: Optional[bool] = None) -> None:
	level = level if level is not None else logging.getLevelName(settings.LOG_LEVEL.upper())
	json_output = settings.LOG_JSON if json_output is None else json_output
	dictConfig(
		{
			"version": 1,
			"disable_existing_loggers": False,
			"formatters": {
				"standard": {
					"()": KeyValueFormatter,
					"format": "%(asctime)s %(levelname)s %(name)s: %(message)s",
				},
				"json": {"()": JsonFormatter},
			},
			"handlers": {
				"console": {
					"class": "logging.StreamHandler",
					"formatter": "json" if json_output else "standard",
					"level": level,
				}
			},
			"loggers": {
				"": {"handlers": ["console"], "level": level},
				"uvicorn": {"handlers": ["console"], "level": level, "propagate": False},
				"arq": {"handlers": ["console"], "level": level, "propagate": False},
				# outbound calls to the classifier / extractor are logged by the dispatchers
				"httpx": {"handlers": ["console"], "level": logging.WARNING, "propagate": False},
			},
		}
	)
