import json
import logging
import sys
from datetime import datetime, timezone

from bluegreen.config import Settings, settings as default_settings

CONTEXT_KEYS = ("service", "color", "phase", "sub_service", "container", "duration_s")


class JSONFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        log_entry = {
            "timestamp": datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z",
            "level": record.levelname,
            "event": record.getMessage(),
            "module": record.module,
        }
        for key in CONTEXT_KEYS:
            value = getattr(record, key, None)
            if value is not None:
                log_entry[key] = value
        if record.exc_info:
            log_entry["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_entry)


def setup_logging(config: Settings = None) -> None:
    config = config or default_settings
    root = logging.getLogger()
    root.setLevel(logging.DEBUG)

    root.handlers.clear()

    stdout_handler = logging.StreamHandler(sys.stdout)
    stdout_handler.setLevel(getattr(logging, config.LOG_LEVEL.upper(), logging.INFO))
    stdout_handler.setFormatter(
        logging.Formatter("%(asctime)s [%(levelname)s] %(message)s", datefmt="%H:%M:%S")
    )
    root.addHandler(stdout_handler)

    # Structured log file, one JSON object per line
    log_dir = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(log_dir / "deploy.log")
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(JSONFormatter())
    root.addHandler(file_handler)

    logging.getLogger("urllib3").setLevel(logging.WARNING)
