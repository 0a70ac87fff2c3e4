"""User-facing notifications ("toasts") for call events."""

from collections import deque
from typing import Callable, Deque, List, NamedTuple, Optional

from loguru import logger

VARIANT_DEFAULT = "default"
VARIANT_DESTRUCTIVE = "destructive"

HISTORY_LIMIT = 100


class Notification(NamedTuple):
    title: str
    description: str
    variant: str = VARIANT_DEFAULT


class Notifier:
    """Delivers notifications to the user.

    The base implementation writes them to the log. Pass ``sink`` to also
    forward every notification to a UI (the CLI passes a click printer).

    Attributes:
        history: The most recent notifications, oldest first. Holds at most
            ``history_limit`` entries.
    """

    def __init__(
        self,
        sink: Optional[Callable[[Notification], None]] = None,
        history_limit: int = HISTORY_LIMIT,
    ):
        self.sink = sink
        self.history: Deque[Notification] = deque(maxlen=history_limit)

    def notify(
        self, title: str, description: str, variant: str = VARIANT_DEFAULT
    ) -> None:
        notification = Notification(title, description, variant)
        self.history.append(notification)
        if variant == VARIANT_DESTRUCTIVE:
            logger.warning(f"{title}: {description}")
        else:
            logger.info(f"{title}: {description}")
        if self.sink is not None:
            self.sink(notification)

    def titles(self) -> List[str]:
        return [n.title for n in self.history]
