"""Logging port handed to the engine instead of a process-wide logger.

``init`` attaches sinks to the ``consensus`` package logger, ``shutdown``
flushes and detaches them. Modules keep using ``logging.getLogger(__name__)``;
everything under ``consensus.*`` propagates to the sinks configured here.
"""

import logging
import os
from datetime import date
from pathlib import Path

from rich.logging import RichHandler

_FILE_FORMAT = "%(asctime)s [%(levelname)-5s] [%(name)s] %(message)s"


def default_log_file(workspace: Path | None = None) -> Path:
    base = workspace or Path.cwd()
    return base / ".consensus" / "logs" / f"consensus-{date.today().isoformat()}.log"


class DiscussionLog:
    def __init__(self, name: str = "consensus") -> None:
        self.name = name
        self.logger = logging.getLogger(name)
        self._handlers: list[logging.Handler] = []

    def init(self, verbose: bool = False, log_file: Path | None = None, console: bool = True) -> None:
        """Attach sinks. ``CONSENSUS_DEBUG=true`` forces debug level plus a file sink."""
        if os.environ.get("CONSENSUS_DEBUG", "").lower() == "true":
            verbose = True
            log_file = log_file or default_log_file()

        self.shutdown()
        self.logger.setLevel(logging.DEBUG if verbose else logging.INFO)

        if console:
            self._attach(RichHandler(rich_tracebacks=True, show_path=False))

        if log_file is not None:
            log_file.parent.mkdir(parents=True, exist_ok=True)
            file_handler = logging.FileHandler(log_file, encoding="utf-8")
            file_handler.setFormatter(logging.Formatter(_FILE_FORMAT))
            self._attach(file_handler)

    def _attach(self, handler: logging.Handler) -> None:
        self.logger.addHandler(handler)
        self._handlers.append(handler)

    def child(self, component: str) -> logging.Logger:
        return self.logger.getChild(component)

    def shutdown(self) -> None:
        for handler in self._handlers:
            handler.flush()
            handler.close()
            self.logger.removeHandler(handler)
        self._handlers.clear()
