"""pyhdg.io.logfiles
Logging setup and the two per-run result files.

``Execution_Time.txt`` collects timestamps around the phases of every cycle,
``Convergence_Result.txt`` one line per cycle with the solver outcome and the
errors. Both are truncated when a run starts and written by rank 0 only.
"""
import logging
import os
from datetime import datetime

EXECUTION_TIME_FILE = "Execution_Time.txt"
CONVERGENCE_FILE = "Convergence_Result.txt"
EXECUTION_LOGGER = "pyhdg.execution_time"
CONVERGENCE_LOGGER = "pyhdg.convergence"


def timestamp() -> str:
    """Local wall-clock time, e.g. ``2024-05-01.13:37:00``."""
    return datetime.now().strftime("%Y-%m-%d.%X")


class CoordinatorFilter(logging.Filter):
    """Let INFO and below through on rank 0 only; warnings and errors from every rank."""

    def __init__(self, rank: int):
        super().__init__()
        self.rank = rank

    def filter(self, record: logging.LogRecord) -> bool:
        return self.rank == 0 or record.levelno >= logging.WARNING


def configure_logging(rank: int = 0, level: str | None = None) -> None:
    """Configure root logging with a consistent, concise format.

    Level precedence: function arg > ENV LOG_LEVEL > INFO.
    """
    level_name = (level or os.getenv("LOG_LEVEL") or "INFO").upper()
    log_level = getattr(logging, level_name, logging.INFO)
    if not isinstance(log_level, int):
        log_level = logging.INFO

    logging.basicConfig(
        level=log_level,
        format=f"%(asctime)s [rank {rank}] %(levelname)s %(name)s: %(message)s",
    )
    root = logging.getLogger()
    root.setLevel(log_level)
    for handler in root.handlers:
        if not any(isinstance(f, CoordinatorFilter) for f in handler.filters):
            handler.addFilter(CoordinatorFilter(rank))


class ResultFiles:
    """Owns the file handlers of the result loggers for one run.

    On ranks other than 0 every method is a no-op, so callers need not guard
    their calls.
    """

    def __init__(self, rank: int, output_dir: str = "."):
        self.rank = rank
        self.output_dir = output_dir
        self.execution = logging.getLogger(EXECUTION_LOGGER)
        self.convergence = logging.getLogger(CONVERGENCE_LOGGER)
        self._handlers = []
        if rank != 0:
            return
        os.makedirs(output_dir, exist_ok=True)
        for logger, fname in ((self.execution, EXECUTION_TIME_FILE), (self.convergence, CONVERGENCE_FILE)):
            handler = logging.FileHandler(os.path.join(output_dir, fname), mode="w")
            handler.setFormatter(logging.Formatter("%(message)s"))
            logger.addHandler(handler)
            logger.setLevel(logging.INFO)
            logger.propagate = False
            self._handlers.append((logger, handler))

    @property
    def active(self) -> bool:
        return bool(self._handlers)

    def phase(self, message: str) -> None:
        """Timestamped line in the execution-time file."""
        if self.active:
            self.execution.info("%s : %s", message, timestamp())

    def note(self, message: str) -> None:
        """Plain line in the execution-time file."""
        if self.active:
            self.execution.info("%s", message)

    def result(self, message: str) -> None:
        if self.active:
            self.convergence.info("%s", message)

    def close(self) -> None:
        for logger, handler in self._handlers:
            logger.removeHandler(handler)
            handler.close()
        self._handlers = []

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
