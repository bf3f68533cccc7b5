import logging
from datetime import datetime
from pathlib import Path

QUIET_LOGGERS = ("urllib3", "requests")


def setup_logging(log_dir: Path, log_level: str = "INFO") -> Path:
    log_dir.mkdir(parents=True, exist_ok=True)
    log_path = log_dir / f"daka-{datetime.now():%Y-%m-%d}.log"

    logging.basicConfig(
        level=getattr(logging, str(log_level).upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, encoding="utf-8"),
            logging.StreamHandler(),
        ],
    )
    # connection-pool debug lines echo full URLs, auth codes included
    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return log_path
