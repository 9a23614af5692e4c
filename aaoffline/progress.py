"""Progress reporting and interactive questions.

The pipeline only talks to these protocols; the CLI decides how (and
whether) anything is shown.
"""

from __future__ import annotations

import logging
import sys
from typing import Protocol

logger = logging.getLogger(__name__)


class ProgressReporter(Protocol):
    def inc(self, n: int = 1) -> None: ...

    def inc_length(self, n: int) -> None: ...

    def next_step(self, step: int, text: str) -> None: ...

    def new_progress(self, total: int, hidden: bool = False) -> None: ...

    def finish_progress(self, message: str) -> None: ...


class NullProgress:
    """Discards everything."""

    def inc(self, n: int = 1) -> None:
        pass

    def inc_length(self, n: int) -> None:
        pass

    def next_step(self, step: int, text: str) -> None:
        pass

    def new_progress(self, total: int, hidden: bool = False) -> None:
        pass

    def finish_progress(self, message: str) -> None:
        pass


class LogProgress:
    """Reports steps at INFO and item counts at DEBUG."""

    def __init__(self, max_steps: int = 8) -> None:
        self._max_steps = max_steps
        self.position = 0
        self.length = 0
        self._hidden = False

    def inc(self, n: int = 1) -> None:
        self.position += n
        if not self._hidden:
            logger.debug("progress %d/%d", self.position, self.length)

    def inc_length(self, n: int) -> None:
        self.length += n

    def next_step(self, step: int, text: str) -> None:
        logger.info("[%d/%d] %s", step, self._max_steps, text)

    def new_progress(self, total: int, hidden: bool = False) -> None:
        self.position = 0
        self.length = total
        self._hidden = hidden

    def finish_progress(self, message: str) -> None:
        logger.info(message)


# ---------------------------------------------------------------------------
# Dialog: yes/no questions
# ---------------------------------------------------------------------------

class Dialog(Protocol):
    def confirm(self, question: str, default: bool) -> bool | None:
        """Return the answer, or None if the user cancelled."""
        ...


class ConsoleDialog:
    """Asks on stdin when it is a terminal; answers `default` otherwise."""

    def confirm(self, question: str, default: bool) -> bool | None:
        if not sys.stdin.isatty():
            logger.debug("stdin is not a terminal, answering %r to: %s", default, question)
            return default
        hint = "[Y/n]" if default else "[y/N]"
        try:
            answer = input(f"{question} {hint} ").strip().lower()
        except (EOFError, KeyboardInterrupt):
            return None
        if not answer:
            return default
        return answer in ("y", "yes")
