"""
Log sink for patching runs

All output of a run goes through a single logger, which writes either
to an append-only log file or to the console. The sink is built once at
startup from the resolved configuration and handed to the orchestrator.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import TextIO

# Number of lines kept from previous runs when the log file is rotated
MAX_LOG_LINES = 2000

LOG_FORMAT = "%(asctime)s - %(levelname)s - %(message)s"


class IsoFormatter(logging.Formatter):
    """
    Formatter that renders record timestamps as ISO-8601 with offset.
    """

    def formatTime(self, record: logging.LogRecord, datefmt: str | None = None) -> str:
        stamp = datetime.fromtimestamp(record.created).astimezone()
        return stamp.isoformat(timespec="seconds")


def truncate_log(path: str | Path, max_lines: int = MAX_LOG_LINES) -> int:
    """
    Trim a log file down to its last ``max_lines`` lines, in place.

    A missing file is left alone.

    :param path: Path to the log file
    :param max_lines: Number of trailing lines to keep
    :return: The number of lines removed
    """
    path = Path(path)
    if not path.is_file():
        return 0

    lines = path.read_text(encoding="utf-8", errors="replace").splitlines(
        keepends=True
    )
    excess = len(lines) - max_lines
    if excess <= 0:
        return 0

    path.write_text("".join(lines[excess:]), encoding="utf-8")
    return excess


def _usable(stream: TextIO | None) -> bool:
    """
    Check whether a console stream can be written to.
    Hosts without a console (services, pythonw) leave it as None.
    """
    return (
        stream is not None
        and hasattr(stream, "write")
        and not getattr(stream, "closed", False)
    )


class LogSink:
    """
    Log destination for a patching run.

    Writes timestamped lines to ``log_file`` when one is given, after
    truncating it to its most recent lines. Otherwise logs go to the
    standard error stream, or standard output if stderr is unusable.
    """

    def __init__(
        self,
        log_file: str | None = None,
        name: str = "winpatch",
        level: int = logging.INFO,
    ) -> None:
        """
        :param log_file: Optional log file path to write logs to.
        :param name: Name of the logger the sink attaches to.
        :param level: The logging level to set.
        """
        self.log_file = log_file
        self.logger = logging.getLogger(name)
        self.logger.setLevel(level)

        self.handler: logging.Handler

        if log_file:
            removed = truncate_log(log_file)
            self.handler = logging.FileHandler(log_file, encoding="utf-8")
        else:
            removed = 0
            stream = sys.stderr if _usable(sys.stderr) else sys.stdout
            self.handler = logging.StreamHandler(stream)

        self.handler.setFormatter(IsoFormatter(LOG_FORMAT))
        self.logger.addHandler(self.handler)

        if removed:
            self.logger.debug("Trimmed %d old lines from %s", removed, log_file)

    @property
    def target(self) -> str:
        """
        Human readable description of where logs are going.
        """
        if self.log_file:
            return self.log_file

        stream = getattr(self.handler, "stream", None)
        return getattr(stream, "name", "console")

    def close(self) -> None:
        """
        Detach and close the handler, flushing any pending output.
        """
        self.logger.removeHandler(self.handler)
        self.handler.close()

    def __enter__(self) -> "LogSink":
        return self

    def __exit__(self, *exc) -> None:
        self.close()
