"""Serialized action queue with per-session error reporting."""
import asyncio
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import Awaitable, Callable, List, Optional

from dockhand.core.errors import ExtensionError
from dockhand.core.logger import get_logger, log_status
from dockhand.engine.config_builder import ExtensionOptions

logger = get_logger(__name__)


class ActionKind(str, Enum):
    INSTALL = "install"
    UPDATE = "update"
    UNINSTALL = "uninstall"
    START = "start"
    RESTART = "restart"
    STOP = "stop"
    SELF_UPDATE = "self_update"

    @property
    def title(self) -> str:
        return _TITLES[self]

    @property
    def noun(self) -> str:
        """Used in failure messages ("Installation failed: ...")."""
        return _NOUNS[self]


_TITLES = {
    ActionKind.INSTALL: "Install",
    ActionKind.UPDATE: "Update",
    ActionKind.UNINSTALL: "Uninstall",
    ActionKind.START: "Start",
    ActionKind.RESTART: "Restart",
    ActionKind.STOP: "Stop",
    ActionKind.SELF_UPDATE: "Update",
}

_NOUNS = {
    **_TITLES,
    ActionKind.INSTALL: "Installation",
    ActionKind.SELF_UPDATE: "Self-update",
}


@dataclass
class QueueEntry:
    name: str
    action: ActionKind
    options: Optional[ExtensionOptions] = None
    recreate: bool = False


Dispatcher = Callable[[QueueEntry], Awaitable[None]]
StatusSink = Callable[[str, bool], None]
ActivityCallback = Callable[[], None]


class ActionQueue:
    """FIFO of pending extension actions, processed one at a time.

    A session runs from the moment the queue turns non-empty until it
    drains. Each entry is awaited to full completion before the next one
    starts, so no two actions ever overlap. Status messages are always
    logged; they reach the status sink only until the first error of the
    session, which keeps a cascade of follow-up failures off the user's
    screen.
    """

    def __init__(
        self,
        dispatch: Dispatcher,
        status_sink: Optional[StatusSink] = None,
        activity_changed: Optional[ActivityCallback] = None,
    ):
        """Initialize action queue.

        Args:
            dispatch: Coroutine executing one entry
            status_sink: Receives ``(message, is_error)`` for user display
            activity_changed: Called when the queue turns busy or idle
        """
        self._dispatch = dispatch
        self.status_sink = status_sink
        self.activity_changed = activity_changed
        self.enabled = True

        self._entries: "OrderedDict[str, QueueEntry]" = OrderedDict()
        self._session_error = False
        self._task: Optional[asyncio.Task] = None

    def enqueue(
        self,
        name: str,
        action: ActionKind,
        options: Optional[ExtensionOptions] = None,
        recreate: bool = False,
    ) -> bool:
        """Queue an action unless one is already pending for ``name``.

        Must be called from the event loop. Processing starts at once when
        the queue was empty.

        Returns:
            True if queued, False if dropped
        """
        if not self.enabled:
            logger.warning(f"Action queue disabled, dropping {action.value} of {name}")
            return False

        if name in self._entries:
            logger.debug(f"{self._entries[name].action.value} of {name} already pending, ignoring {action.value}")
            return False

        self._entries[name] = QueueEntry(name=name, action=action, options=options, recreate=recreate)
        logger.debug(f"Queued {action.value} of {name}")

        if len(self._entries) == 1:
            self._notify_activity()
            self._task = asyncio.get_running_loop().create_task(self._process())

        return True

    async def _process(self) -> None:
        try:
            while self._entries:
                name, entry = next(iter(self._entries.items()))
                try:
                    await self._dispatch(entry)
                except ExtensionError as e:
                    self.set_status(f"{entry.action.noun} failed: {name}\n{e}", True)
                except Exception as e:
                    logger.exception(f"Unexpected failure during {entry.action.value} of {name}")
                    self.set_status(f"{entry.action.noun} failed: {name}\n{e}", True)
                finally:
                    self._entries.pop(name, None)
        finally:
            self._session_error = False
            self._notify_activity()

    def set_status(self, message: str, is_error: bool = False) -> None:
        """Log a status message and forward it to the sink if the session allows."""
        log_status(logger, message, is_error)

        if not self._session_error and self.status_sink:
            self.status_sink(message, is_error)

        if is_error and self._entries:
            self._session_error = True

    def _notify_activity(self) -> None:
        if self.activity_changed:
            self.activity_changed()

    @property
    def current(self) -> Optional[QueueEntry]:
        """Entry being processed, if any."""
        return next(iter(self._entries.values()), None)

    def pending(self) -> List[QueueEntry]:
        return list(self._entries.values())

    def is_idle(self, name: Optional[str] = None) -> bool:
        if name:
            return name not in self._entries
        return not self._entries

    async def wait_idle(self) -> None:
        """Wait until the current session (if any) has drained."""
        while self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
