"""
Logging setup.

``sync.log`` receives everything at the configured level, ``summary.log``
only INFO and above. Synchronizers log through ``SyncLogger`` so every line
names the configuration it belongs to.
"""

import logging
import os
from typing import Optional

from .config import LOG_LEVEL, LOG_DIR

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None, log_dir: Optional[str] = None):
    level = (level or LOG_LEVEL).upper()
    log_dir = log_dir or LOG_DIR
    os.makedirs(log_dir, exist_ok=True)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=[
            logging.FileHandler(os.path.join(log_dir, "sync.log")),
            logging.StreamHandler()
        ]
    )

    # summary.log for INFO+
    summary_handler = logging.FileHandler(os.path.join(log_dir, "summary.log"))
    summary_handler.setLevel(logging.INFO)
    summary_handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logging.getLogger().addHandler(summary_handler)

    # Quiet noisy libs
    logging.getLogger("urllib3").setLevel(logging.INFO)
    logging.getLogger("requests").setLevel(logging.INFO)


class SyncLogger(logging.LoggerAdapter):
    """
    Prefixes messages with ``config="<name>"`` and, if given, the identifiers
    of the record being processed::

        log.info("Subscriber updated", email="hugo@example.org", crm_id=12)
    """

    CONTEXT_KEYS = ("email", "mailchimp_id", "crm_id")

    def __init__(self, logger: logging.Logger, config_name: str):
        super().__init__(logger, {"config": config_name})

    def log(self, level, msg, *args, email=None, mailchimp_id=None, crm_id=None, **kwargs):
        context = {"email": email, "mailchimp_id": mailchimp_id, "crm_id": crm_id}
        prefix = f'config="{self.extra["config"]}"'
        for key in self.CONTEXT_KEYS:
            if context[key] not in (None, ""):
                prefix += f' {key}="{context[key]}"'
        super().log(level, f"{prefix} {msg}", *args, **kwargs)

    def debug(self, msg, *args, **kwargs):
        self.log(logging.DEBUG, msg, *args, **kwargs)

    def info(self, msg, *args, **kwargs):
        self.log(logging.INFO, msg, *args, **kwargs)

    def warning(self, msg, *args, **kwargs):
        self.log(logging.WARNING, msg, *args, **kwargs)

    def error(self, msg, *args, **kwargs):
        self.log(logging.ERROR, msg, *args, **kwargs)
