"""Console confirmation prompts."""

from __future__ import annotations

import sys
from typing import Callable, Optional, TextIO

from device_repair.logging import LoggerFactory
from device_repair.storage.exceptions import OperatorCancelled


log = LoggerFactory.for_system()

_YES = {"y", "yes"}


class Confirmer:
    """Asks the operator before destructive or final steps.

    With prompting disabled the message is only logged and the answer is
    taken to be yes, unless the prompt is marked unconditional.
    """

    def __init__(
        self,
        prompt: bool = True,
        reader: Optional[Callable[[], str]] = None,
        stream: Optional[TextIO] = None,
    ):
        self.prompt = prompt
        self.reader = reader or sys.stdin.readline
        self.stream = stream or sys.stderr

    def ask(self, title: str, message: str, unconditional: bool = False) -> bool:
        if not self.prompt and not unconditional:
            log.info(f"{title}: {message}")
            return True
        print(f"\n== {title} ==\n{message}\n", file=self.stream)
        print("Proceed? [y/N] ", end="", file=self.stream, flush=True)
        answer = self.reader().strip().lower()
        accepted = answer in _YES
        log.debug(f"{title}: operator answered {answer!r}")
        return accepted

    def require(self, title: str, message: str) -> None:
        """Like :meth:`ask`, but declining raises :class:`OperatorCancelled`."""
        if not self.ask(title, message):
            raise OperatorCancelled(f"{title}: cancelled by operator")
