"""Extension manager: ties the catalog, the action queue and the lifecycle together."""
import asyncio
import signal
import tarfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dockhand.catalog.models import ExtensionDescriptor, ImageRef, OptionSchema, parse_image_ref
from dockhand.catalog.provider import CatalogProvider
from dockhand.core.actions import ActionKind, ActionQueue, ActivityCallback, QueueEntry, StatusSink
from dockhand.core.config import DockhandConfig
from dockhand.core.errors import CatalogError, ConnectivityError, EngineError, ExtensionError
from dockhand.core.logger import get_logger
from dockhand.core.scheduler import UpdateTimer
from dockhand.core.state_store import StateStore
from dockhand.engine.binds import BindProps
from dockhand.engine.client import ContainerEngine, DockerEngine
from dockhand.engine.config_builder import ExtensionOptions
from dockhand.engine.lifecycle import (
    DEFAULT_TAG,
    ContainerLifecycle,
    ExtensionState,
    ExtensionStatus,
)
from dockhand.engine.progress import LayerStatus

logger = get_logger(__name__)

# Tells the supervisor to relaunch Dockhand with its freshly pulled image
SELF_UPDATE_EXIT_CODE = 66


@dataclass
class ActionSet:
    """Actions valid for an extension in its current state."""

    actions: List[ActionKind] = field(default_factory=list)
    options: Optional[OptionSchema] = None


class ExtensionManager:
    """Owns every registry Dockhand keeps and dispatches queued actions.

    Requests enter through ``perform_action()`` or ``update_all()`` and are
    serialized by the action queue; each queue entry is executed here,
    mostly by delegating to the container lifecycle. Entries named after the
    catalog refresh the catalog instead, and an update of Dockhand itself
    ends the process so a supervisor can relaunch it.
    """

    def __init__(
        self,
        config: DockhandConfig,
        engine: Optional[ContainerEngine] = None,
        catalog: Optional[CatalogProvider] = None,
        state: Optional[StateStore] = None,
        status_sink: Optional[StatusSink] = None,
        activity_changed: Optional[ActivityCallback] = None,
    ):
        self.config = config
        self.engine = engine or DockerEngine(config.engine_url, config.engine_timeout)
        self.lifecycle = ContainerLifecycle(
            self.engine,
            stop_timeout=config.stop_timeout,
            on_progress=self._on_progress,
        )
        self.catalog = catalog or CatalogProvider(
            url=config.catalog_url or None,
            repos_dir=config.repos_dir,
            manager_name=config.manager_name,
            catalog_name=config.catalog_name,
        )
        self.state = state or StateStore(config.state_file)
        self.queue = ActionQueue(self._dispatch, status_sink, activity_changed)

        self.containerized = False
        self.exit_code: Optional[int] = None
        self._shutdown: Optional[asyncio.Event] = None

    @property
    def manager_name(self) -> str:
        return self.config.manager_name

    @property
    def catalog_name(self) -> str:
        return self.config.catalog_name

    def set_status(self, message: str, is_error: bool = False) -> None:
        self.queue.set_status(message, is_error)

    # ==================== Startup / shutdown ====================

    async def startup(self) -> bool:
        """Check the engine, learn what is installed and load the catalog.

        A missing or unsupported engine is reported once; the queue then
        stays disabled for the lifetime of the process.

        Returns:
            True if Dockhand is operational
        """
        self.set_status("Starting Dockhand...")

        try:
            info = await self.lifecycle.engine_info()
            await self.lifecycle.refresh_installed()
        except (ConnectivityError, EngineError) as e:
            self.set_status(f"Dockhand requires a container engine: {e}", True)
            self.queue.enabled = False
            return False

        self.containerized = self.manager_name in self.lifecycle.installed
        if not self.containerized:
            logger.info(f"No {self.manager_name} container found, running outside the engine")

        self.set_status(f"Container engine for Linux found: version {info['Version']}")
        self.queue.enqueue(self.catalog_name, ActionKind.INSTALL)
        return True

    async def serve(self) -> int:
        """Run until a signal or a self-update asks to stop.

        Returns:
            Process exit code
        """
        self._shutdown = asyncio.Event()
        if self.exit_code is not None:
            self._shutdown.set()

        loop = asyncio.get_running_loop()
        for sig in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(sig, self.request_shutdown)

        timer = None
        try:
            await self.startup()
            if self.config.update_time:
                timer = UpdateTimer(self.config.update_time, self.update_all)
                timer.start()
            await self._shutdown.wait()
        finally:
            if timer:
                timer.cancel()
            for sig in (signal.SIGTERM, signal.SIGINT):
                loop.remove_signal_handler(sig)
            self.save_state()

        return self.exit_code or 0

    def request_shutdown(self, exit_code: int = 0) -> None:
        """Persist state and stop the serve loop."""
        logger.info(f"Shutting down (exit code {exit_code})")
        self.exit_code = exit_code
        self.save_state()
        if self._shutdown is not None:
            self._shutdown.set()

    def save_state(self) -> None:
        if self.state.dirty:
            self.state.save()

    # ==================== Requests ====================

    def perform_action(
        self,
        action: ActionKind,
        name: str,
        options: Optional[ExtensionOptions] = None,
    ) -> bool:
        """Queue a user requested action.

        Returns:
            True if an entry was queued (or, for a manager restart, the
            shutdown was requested)
        """
        action = ActionKind(action)

        if name == self.manager_name:
            if action == ActionKind.RESTART:
                self.request_shutdown(0)
                return True
            if action == ActionKind.UPDATE:
                if not self.config.features.self_update_enabled:
                    logger.warning("Self-update is turned off")
                    return False
                action = ActionKind.SELF_UPDATE
            else:
                logger.warning(f"{action.title} is not available for {name}")
                return False

        if name != self.catalog_name and self.catalog.lookup(name) is None:
            logger.warning(f"Unknown extension: {name}")
            return False

        # New options for an installed extension only take effect in a fresh container
        recreate = (
            action == ActionKind.INSTALL
            and options is not None
            and self.lifecycle.get_status(name).state != ExtensionState.NOT_INSTALLED
        )
        return self.queue.enqueue(name, action, options, recreate=recreate)

    def update_all(self) -> List[str]:
        """Queue the catalog refresh, then every installed extension, then Dockhand itself.

        Returns:
            Names that were queued
        """
        if not self.config.features.auto_update_enabled:
            logger.info("Automatic updates are turned off")
            return []

        queued = []
        if self.queue.enqueue(self.catalog_name, ActionKind.UPDATE):
            queued.append(self.catalog_name)

        for name in self.installed_extensions():
            if name != self.manager_name and self.queue.enqueue(name, ActionKind.UPDATE):
                queued.append(name)

        if (
            self.manager_name in self.installed_extensions()
            and self.config.features.self_update_enabled
            and self.queue.enqueue(self.manager_name, ActionKind.SELF_UPDATE)
        ):
            queued.append(self.manager_name)

        if not [n for n in queued if n != self.catalog_name]:
            logger.info("No updates found")
        return queued

    # ==================== Queries ====================

    def installed_extensions(self) -> List[str]:
        """Installed containers that belong to catalog extensions."""
        return [name for name in self.lifecycle.installed if self.catalog.lookup(name) is not None]

    def get_status(self, name: str) -> ExtensionStatus:
        if name == self.catalog_name:
            state = ExtensionState.INSTALLED if self.catalog.loaded else ExtensionState.NOT_INSTALLED
            return ExtensionStatus(state=state, tag=self.catalog.version)
        return self.lifecycle.get_status(name)

    def get_details(self, name: str) -> Optional[Dict[str, Optional[str]]]:
        descriptor = self.catalog.lookup(name)
        if descriptor is None:
            return None
        return {
            'author': descriptor.author,
            'packager': descriptor.packager,
            'display_name': descriptor.display_name,
            'description': descriptor.description,
        }

    def get_actions(self, name: str) -> ActionSet:
        state = self.get_status(name).state
        result = ActionSet()

        if state == ExtensionState.NOT_INSTALLED:
            result.actions.append(ActionKind.INSTALL)
            descriptor = self.catalog.lookup(name)
            if descriptor and descriptor.image:
                result.options = descriptor.image.options
        elif name == self.catalog_name:
            result.actions.append(ActionKind.UPDATE)
        elif name == self.manager_name:
            if self._has_update(name) and self.config.features.self_update_enabled:
                result.actions.append(ActionKind.UPDATE)
            if state == ExtensionState.RUNNING:
                result.actions.append(ActionKind.RESTART)
        else:
            if self._has_update(name):
                result.actions.append(ActionKind.UPDATE)
            result.actions.append(ActionKind.UNINSTALL)
            if state == ExtensionState.RUNNING:
                result.actions.extend([ActionKind.RESTART, ActionKind.STOP])
            else:
                result.actions.append(ActionKind.START)

        return result

    def _has_update(self, name: str) -> bool:
        # Tags are mutable, so every installed catalog extension may have one
        return name in self.installed_extensions()

    def is_idle(self, name: Optional[str] = None) -> bool:
        return self.queue.is_idle(name)

    # ==================== Diagnostics ====================

    async def collect_logs(self, archive: Path) -> Path:
        """Capture every extension's log and pack the log directory.

        Args:
            archive: Target ``.tar.gz`` file

        Returns:
            Path of the written archive
        """
        log_dir = Path(self.config.log_dir)
        await asyncio.to_thread(log_dir.mkdir, parents=True, exist_ok=True)

        for name in self.installed_extensions():
            logger.info(f"Capturing log stream of {name}")
            try:
                await self.lifecycle.get_log(name, log_dir / f"{name}.log")
            except ExtensionError as e:
                logger.warning(f"Could not capture log of {name}: {e}")

        archive = Path(archive)
        await asyncio.to_thread(_pack_directory, log_dir, archive)
        logger.info(f"Logs archived in {archive}")
        return archive

    # ==================== Dispatch ====================

    async def _dispatch(self, entry: QueueEntry) -> None:
        if entry.name == self.catalog_name:
            if entry.action in (ActionKind.INSTALL, ActionKind.UPDATE):
                await self._refresh_catalog()
            return

        handlers = {
            ActionKind.INSTALL: self._install,
            ActionKind.UPDATE: self._update,
            ActionKind.UNINSTALL: self._uninstall,
            ActionKind.START: self._start_entry,
            ActionKind.STOP: self._stop_entry,
            ActionKind.RESTART: self._restart,
            ActionKind.SELF_UPDATE: self._self_update,
        }
        await handlers[entry.action](entry)

    async def _refresh_catalog(self) -> None:
        self.set_status("Loading extension catalog...")
        arch = await self.lifecycle.arch()

        if await self.catalog.refresh(arch):
            self.set_status(f"Extension catalog loaded (v{self.catalog.version})")
        else:
            self.set_status("Extension catalog already up to date")

    async def _install(self, entry: QueueEntry) -> None:
        name = entry.name
        descriptor = self._descriptor(name)
        options = entry.options or self.state.get_options(name) or _default_options(descriptor)

        self.set_status(f"Installing: {name}...")
        result = await self.lifecycle.install(descriptor, self._bind_props(name), options, entry.recreate)

        if result.up_to_date:
            self.set_status(f"{name} already up to date")
        else:
            self.state.set_options(name, options)
            self.save_state()
            self.set_status(f"Installed: {name} ({result.tag})")

        await self._start(name)

    async def _update(self, entry: QueueEntry) -> None:
        name = entry.name
        descriptor = self._descriptor(name)
        bind_props = self._bind_props(name)

        state = self.get_status(name).state
        was_running = state == ExtensionState.RUNNING
        user_stopped = state == ExtensionState.STOPPED

        await self._stop(name, user=False)
        self.set_status(f"Updating: {name}...")

        try:
            options = entry.options or self.state.get_options(name)
            learned = options is None
            if learned:
                options = await self.lifecycle.recover_options(descriptor, bind_props)
            result = await self.lifecycle.update(descriptor, options, bind_props)
        except ExtensionError as e:
            self.set_status(f"Update failed: {name}\n{e}", True)
            if was_running:
                await self._fallback_start(name)
            return

        self.state.set_options(name, options, learned=learned)
        self.save_state()
        self.set_status(f"Updated: {name} ({result.tag})")

        if not user_stopped:
            await self._start(name)

    async def _fallback_start(self, name: str) -> None:
        try:
            await self._start(name)
        except ExtensionError as e:
            self.set_status(f"Start failed: {name}\n{e}", True)

    async def _uninstall(self, entry: QueueEntry) -> None:
        name = entry.name
        await self._stop(name, user=True)

        self.set_status(f"Uninstalling: {name}...")
        await self.lifecycle.uninstall(name)

        self.state.forget(name)
        self.save_state()
        self.set_status(f"Uninstalled: {name}")

    async def _start_entry(self, entry: QueueEntry) -> None:
        await self._start(entry.name)

    async def _stop_entry(self, entry: QueueEntry) -> None:
        await self._stop(entry.name, user=True)

    async def _restart(self, entry: QueueEntry) -> None:
        name = entry.name
        self.set_status(f"Restarting: {name}...")
        await self.lifecycle.restart(name)
        self.set_status(f"Restarted: {name}")

    async def _start(self, name: str) -> None:
        await self.lifecycle.start(name)
        self.set_status(f"Started: {name}")

    async def _stop(self, name: str, user: bool) -> None:
        if self.lifecycle.get_status(name).state != ExtensionState.RUNNING:
            return

        self.set_status(f"Terminating process: {name}...")
        if user:
            await self.lifecycle.stop(name)
            self.set_status(f"Stopped: {name}")
        else:
            await self.lifecycle.terminate(name)
            self.set_status(f"Process terminated: {name}")

    async def _self_update(self, entry: QueueEntry) -> None:
        name = entry.name
        info = await self.engine.inspect_container(name)
        if info is None:
            raise EngineError(f"{name} does not run in a container and cannot update itself")

        current = parse_image_ref((info.get("Config") or {}).get("Image") or "")
        ref = ImageRef(current.repository, current.tag or DEFAULT_TAG)

        self.set_status(f"Updating: {name}...")
        progress = await self.lifecycle.pull(name, ref)

        if progress.up_to_date:
            self.set_status(f"{name} already up to date")
            return

        self.set_status(f"Updated: {name} ({ref.tag})")
        self.request_shutdown(SELF_UPDATE_EXIT_CODE)

    # ==================== Helpers ====================

    def _descriptor(self, name: str) -> ExtensionDescriptor:
        descriptor = self.catalog.lookup(name)
        if descriptor is None:
            raise CatalogError(f"{name} is not in the extension catalog")
        return descriptor

    def _bind_props(self, name: str) -> BindProps:
        return BindProps(
            root=self.config.data_root,
            name=name,
            volume_owner=self.manager_name if self.containerized else None,
        )

    def _on_progress(self, name: str, layers: Dict[str, LayerStatus]) -> None:
        entry = self.queue.current
        updating = entry is not None and entry.action in (ActionKind.UPDATE, ActionKind.SELF_UPDATE)
        lines = [f"{'Updating' if updating else 'Installing'}: {name}"]
        lines.extend(str(layer) for layer in layers.values())
        self.set_status("\n".join(lines))


def _default_options(descriptor: ExtensionDescriptor) -> ExtensionOptions:
    if descriptor.image and descriptor.image.options:
        return descriptor.image.options.default_options()
    return ExtensionOptions()


def _pack_directory(directory: Path, archive: Path) -> None:
    archive.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(archive, "w:gz") as tar:
        tar.add(directory, arcname=directory.name)
