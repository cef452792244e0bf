import logging
import sys
from pathlib import Path
from typing import Optional

FORMAT = "%(asctime)s - %(levelname)s - %(name)s - %(message)s"
DATEFMT = "%Y-%m-%d %H:%M:%S"


def get_logger(name: str = "wsecho") -> logging.Logger:
    logger = logging.getLogger(name)
    if not logger.handlers:
        logger.setLevel(logging.DEBUG)

        # stderr is the diagnostic sink; each record is written under the handler lock
        sh = logging.StreamHandler(sys.stderr)
        sh.setLevel(logging.INFO)
        sh.setFormatter(logging.Formatter(FORMAT, datefmt=DATEFMT))

        logger.addHandler(sh)
    return logger


def configure_logging(level: str = "INFO", log_file: Optional[str] = None):
    """Apply the configured level to every wsecho logger, optionally adding a log file"""
    numeric = logging.getLevelName(str(level).upper())
    if not isinstance(numeric, int):
        numeric = logging.INFO

    fh = None
    if log_file:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        fh = logging.FileHandler(str(path), mode="a")
        fh.setLevel(logging.DEBUG)
        fh.setFormatter(logging.Formatter(FORMAT, datefmt=DATEFMT))

    for name, logger in list(logging.Logger.manager.loggerDict.items()):
        if not name.startswith("wsecho") or not isinstance(logger, logging.Logger):
            continue
        for handler in logger.handlers:
            if isinstance(handler, logging.StreamHandler) and not isinstance(handler, logging.FileHandler):
                handler.setLevel(numeric)
        if fh is not None:
            logger.addHandler(fh)


def fail(exc: BaseException, what: str, logger: logging.Logger):
    """Report a failed operation on the diagnostic sink, tagged with the operation name"""
    logger.error(f"{what}: {str(exc) or repr(exc)}")
