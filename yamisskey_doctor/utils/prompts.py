"""
Interactive gates: destructive-run confirmation and backup selection.

Components depend on the ``Confirmer`` interface only; the CLI decides
whether a run is forced (``AlwaysYes``) or interactive (``PromptStdin``).
"""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Callable, Optional, Sequence

from rich.console import Console

from yamisskey_doctor.exceptions import SelectionError
from yamisskey_doctor.monitoring.logger import get_logger

logger = get_logger(__name__)

CONFIRM_WORD = "yes"


class Confirmer(ABC):
    """Decides whether a destructive operation may proceed."""

    @abstractmethod
    def confirm(self, warning: str, details: Sequence[str] = ()) -> bool:
        ...


class AlwaysYes(Confirmer):
    """Non-interactive confirmation (``--force``)."""

    def confirm(self, warning: str, details: Sequence[str] = ()) -> bool:
        logger.info("Confirmation skipped (forced)", warning=warning)
        return True


class PromptStdin(Confirmer):
    """Requires the operator to type exactly ``yes``."""

    def __init__(self, read: Callable[[str], str] = input, console: Optional[Console] = None):
        self._read = read
        self._console = console or Console(stderr=True, highlight=False)

    def confirm(self, warning: str, details: Sequence[str] = ()) -> bool:
        self._console.print(f"\n[bold yellow]WARNING:[/bold yellow] {warning}")
        for line in details:
            self._console.print(f"   {line}")
        try:
            answer = self._read(f"\nType '{CONFIRM_WORD}' to continue: ")
        except EOFError:
            answer = ""
        accepted = answer.strip() == CONFIRM_WORD
        if not accepted:
            logger.info("Confirmation declined")
        return accepted


def choose_backup(names: Sequence[str], read: Callable[[str], str] = input) -> Optional[str]:
    """
    Ask for a 1-based backup number.

    Returns None when the operator cancels (``q`` or empty input).

    Raises:
        SelectionError: Input is not a number in range
    """
    try:
        answer = read("\nSelect backup number (or 'q' to quit): ").strip()
    except EOFError:
        answer = ""
    if answer in ("", "q"):
        return None
    try:
        index = int(answer)
    except ValueError:
        raise SelectionError(f"Invalid selection: {answer}") from None
    if index < 1 or index > len(names):
        raise SelectionError(f"Invalid selection: {answer}")
    return names[index - 1]
