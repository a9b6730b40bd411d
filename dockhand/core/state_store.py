"""Durable state that survives restarts of Dockhand itself."""
import json
import os
from datetime import datetime
from pathlib import Path
from typing import Optional

from dockhand.core.logger import get_logger
from dockhand.engine.config_builder import ExtensionOptions

logger = get_logger(__name__)


class StateStore:
    """Remember the options each extension was installed with.

    The engine is authoritative for what is installed and running; this store
    only keeps what the engine cannot tell us later, i.e. the install options
    a user chose (or that were recovered by introspecting a container). An
    update without explicit options reuses them.
    """

    VERSION = "1.0"

    def __init__(self, state_file: Optional[Path] = None):
        """Initialize state store.

        Args:
            state_file: Path to state file. Defaults to .dockhand/state.json
        """
        if state_file is None:
            state_file = Path.cwd() / ".dockhand" / "state.json"

        self.state_file = Path(state_file)
        self.enabled = not os.environ.get('DOCKHAND_STATELESS')
        self.state = self._load()
        self.dirty = False

    def _load(self) -> dict:
        if not self.state_file.exists():
            return self._empty_state()

        try:
            with open(self.state_file, 'r') as f:
                state = json.load(f)
        except (json.JSONDecodeError, IOError) as e:
            logger.warning(f"Failed to load state file: {e}, using empty state")
            return self._empty_state()

        if not isinstance(state, dict) or 'extensions' not in state:
            logger.warning(f"Unrecognized state file layout in {self.state_file}, using empty state")
            return self._empty_state()

        logger.debug(f"Loaded state from {self.state_file}")
        return state

    def _empty_state(self) -> dict:
        return {
            "version": self.VERSION,
            "created_at": datetime.now().isoformat(),
            "updated_at": datetime.now().isoformat(),
            "extensions": {},
        }

    def save(self) -> bool:
        """Write the state file atomically (temp file, then rename).

        Returns:
            True if saved successfully
        """
        if not self.enabled:
            logger.debug("State tracking disabled (DOCKHAND_STATELESS)")
            return False

        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            self.state["updated_at"] = datetime.now().isoformat()

            temp_file = self.state_file.with_suffix('.tmp')
            with open(temp_file, 'w') as f:
                json.dump(self.state, f, indent=2)

            temp_file.replace(self.state_file)
            self.dirty = False
            logger.debug(f"Saved state to {self.state_file}")
            return True

        except (IOError, OSError) as e:
            logger.error(f"Failed to save state: {e}")
            return False

    # Extension options

    def set_options(self, name: str, options: ExtensionOptions, learned: bool = False) -> None:
        """Record the options an extension runs with.

        Args:
            name: Extension name
            options: Options applied at install/update time
            learned: True when recovered by introspection rather than chosen by the user
        """
        self.state['extensions'][name] = {
            'options': options.to_dict(),
            'learned': learned,
            'timestamp': datetime.now().isoformat(),
        }
        self.dirty = True

    def get_options(self, name: str) -> Optional[ExtensionOptions]:
        entry = self.state['extensions'].get(name)
        if not entry:
            return None
        return ExtensionOptions.from_dict(entry.get('options') or {})

    def forget(self, name: str) -> None:
        """Drop everything known about an uninstalled extension."""
        if self.state['extensions'].pop(name, None) is not None:
            self.dirty = True
