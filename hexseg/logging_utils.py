import logging
import os
from logging.handlers import RotatingFileHandler


LOGGER_NAME = "hexseg"
_FORMAT = "%(asctime)s [%(levelname)s] %(name)s - %(message)s"


def setup_logger(out_dir: str, level: str = "INFO", console: bool = True) -> logging.Logger:
    """Configure the `hexseg` logger to write run and error logs into `out_dir`.

    Calling again with the same directory is a no-op; a different directory
    replaces the previous handlers so consecutive runs log to their own output.
    """
    os.makedirs(out_dir, exist_ok=True)
    logger = logging.getLogger(LOGGER_NAME)
    log_path = os.path.abspath(os.path.join(out_dir, "hexseg.log"))
    err_path = os.path.abspath(os.path.join(out_dir, "hexseg.error.log"))
    if any(getattr(h, "baseFilename", None) == log_path for h in logger.handlers):
        return logger
    reset_logger()

    lvl = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(lvl)
    fmt = logging.Formatter(_FORMAT)

    fh = RotatingFileHandler(log_path, maxBytes=5 * 1024 * 1024, backupCount=3)
    fh.setFormatter(fmt)
    fh.setLevel(lvl)
    logger.addHandler(fh)

    eh = RotatingFileHandler(err_path, maxBytes=2 * 1024 * 1024, backupCount=2)
    eh.setFormatter(fmt)
    eh.setLevel(logging.ERROR)
    logger.addHandler(eh)

    if console:
        ch = logging.StreamHandler()
        ch.setFormatter(fmt)
        ch.setLevel(lvl)
        logger.addHandler(ch)

    logger.propagate = False
    logger.info("Logger initialized. Logs at %s; errors at %s", log_path, err_path)
    return logger


def reset_logger() -> None:
    """Close and detach every handler and restore propagation to the root logger."""
    logger = logging.getLogger(LOGGER_NAME)
    for h in list(logger.handlers):
        logger.removeHandler(h)
        h.close()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)
