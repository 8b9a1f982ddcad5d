import logging
import os
from logging.handlers import RotatingFileHandler

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"


def configure_logging(
    level: str = None, log_file: str = None, verbose: bool = False
) -> None:
    """Configure root logging for the farm.

    - `level`: string like 'INFO' or 'DEBUG'. If None, will use env LOG_LEVEL or 'INFO'.
    - `log_file`: optional path for rotating file logging in addition to stdout/stderr.
    - `verbose`: if True, enables DEBUG logs for the KaleRig loggers (miner output included).
    """
    level = (level or os.environ.get("LOG_LEVEL") or "INFO").upper()
    level_const = getattr(logging, level, logging.INFO)

    root = logging.getLogger()
    root.setLevel(level_const)
    formatter = logging.Formatter(LOG_FORMAT)

    # Ensure a StreamHandler exists
    has_stream = any(
        isinstance(h, logging.StreamHandler) and not isinstance(h, logging.FileHandler)
        for h in root.handlers
    )
    if not has_stream:
        sh = logging.StreamHandler()
        sh.setLevel(level_const)
        sh.setFormatter(formatter)
        root.addHandler(sh)

    # Replace any previous rotating file handler
    for h in list(root.handlers):
        if isinstance(h, RotatingFileHandler):
            h.close()
            root.removeHandler(h)
    if log_file:
        log_dir = os.path.dirname(os.path.abspath(log_file))
        os.makedirs(log_dir, exist_ok=True)
        fh = RotatingFileHandler(log_file, maxBytes=10 * 1024 * 1024, backupCount=5)
        fh.setLevel(level_const)
        fh.setFormatter(formatter)
        root.addHandler(fh)

    if verbose:
        logging.getLogger("KaleRig").setLevel(logging.DEBUG)
