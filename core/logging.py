# core/logging.py
import sys

from loguru import logger

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<magenta>{extra[process]}</magenta> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level>"
)


def setup_logging(level: str = "INFO", process: str = "orchestrator") -> None:
    """
    Replace loguru's default sink with one that tags every line with the
    process role, so worker-pool output can be told apart from the API's.
    """
    logger.remove()
    logger.configure(extra={"process": process})
    logger.add(sys.stderr, level=level.upper(), format=_FORMAT, enqueue=False)
