"""Container lifecycle management (install, update, uninstall, start, stop)."""
import asyncio
import re
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Iterator, Optional, Set

from dockhand.catalog.models import ExtensionDescriptor, ImageRef, parse_image_ref
from dockhand.core.errors import ConnectivityError, EngineError, FilesystemError, PullError
from dockhand.core.logger import get_logger
from .binds import BindProps, BindProvisioner
from .client import ContainerEngine
from .config_builder import (
    RESTART_POLICY_UNLESS_STOPPED,
    BindMapping,
    ContainerConfigBuilder,
    ExtensionOptions,
)
from .logs import demultiplex
from .progress import LayerStatus, PullProgress

logger = get_logger(__name__)

DEFAULT_TAG = "latest"
DEFAULT_STOP_TIMEOUT = 10

LayerProgressCallback = Callable[[str, Dict[str, LayerStatus]], None]


class ExtensionState(str, Enum):
    """Generic extension state, independent of the engine's vocabulary."""

    NOT_INSTALLED = "not_installed"
    INSTALLED = "installed"
    STOPPED = "stopped"
    RUNNING = "running"
    TERMINATED = "terminated"


# Stopped by Dockhand itself (before update/uninstall), not by the user
TERMINATED = ExtensionState.TERMINATED.value

_NATIVE_STATES = {
    "running": ExtensionState.RUNNING,
    "created": ExtensionState.STOPPED,
    "exited": ExtensionState.STOPPED,
    TERMINATED: ExtensionState.TERMINATED,
}


@dataclass
class InstalledRecord:
    """Cached view of an installed extension; the engine stays authoritative."""

    tag: str
    state: Optional[str] = None
    started_at: Optional[datetime] = None


@dataclass
class ExtensionStatus:
    state: ExtensionState
    tag: Optional[str] = None
    uptime: Optional[timedelta] = None


@dataclass
class InstallResult:
    """Outcome of an install or update.

    ``up_to_date`` marks the neutral outcome: the image was current and the
    existing container was left untouched.
    """

    tag: str
    up_to_date: bool = False


class ContainerLifecycle:
    """Reconcile extension intents into container engine operations.

    Containers are created with their restart policy off and switched to
    ``unless-stopped`` on their first explicit start; an extension that was
    installed but never started therefore stays down across engine restarts.
    """

    def __init__(
        self,
        engine: ContainerEngine,
        binds: Optional[BindProvisioner] = None,
        stop_timeout: int = DEFAULT_STOP_TIMEOUT,
        on_progress: Optional[LayerProgressCallback] = None,
    ):
        """Initialize lifecycle manager.

        Args:
            engine: Container engine to operate on
            binds: Bind provisioner (defaults to one on the same engine)
            stop_timeout: Grace period for user-initiated stops
            on_progress: Receives ``(name, layers)`` while images are pulled
        """
        self.engine = engine
        self.binds = binds or BindProvisioner(engine)
        self.stop_timeout = stop_timeout
        self.on_progress = on_progress
        self.installed: Dict[str, InstalledRecord] = {}
        self.engine_version: Optional[Dict[str, Any]] = None
        self._in_flight: Set[str] = set()

    # ==================== Engine ====================

    async def engine_info(self) -> Dict[str, Any]:
        """Query and validate the engine.

        Raises:
            ConnectivityError: Engine unreachable, not a Linux host, or of unknown architecture
        """
        info = await self.engine.version()
        if not info or not info.get("Version"):
            raise ConnectivityError("Container engine not found")

        host_os = (info.get("Os") or "").lower()
        if host_os != "linux":
            raise ConnectivityError(f"Host OS not supported: {info.get('Os')}")

        if not info.get("Arch"):
            raise ConnectivityError("Container engine did not report its host architecture")

        self.engine_version = info
        logger.info(f"Container engine for Linux found: version {info['Version']} ({info.get('Arch')})")
        return info

    async def arch(self) -> str:
        if self.engine_version is None:
            await self.engine_info()
        return self.engine_version.get("Arch", "")

    @contextmanager
    def _exclusive(self, name: str) -> Iterator[None]:
        if name in self._in_flight:
            raise EngineError(f"Another operation on {name} is already in progress")
        self._in_flight.add(name)
        try:
            yield
        finally:
            self._in_flight.discard(name)

    # ==================== Install / update ====================

    async def install(
        self,
        descriptor: ExtensionDescriptor,
        bind_props: Optional[BindProps] = None,
        options: Optional[ExtensionOptions] = None,
        recreate: bool = False,
    ) -> InstallResult:
        """Pull the extension's image and (re)create its container.

        Args:
            descriptor: Catalog entry to install
            bind_props: Where declared bind files go (None skips bind provisioning)
            options: Environment, device, and bind options
            recreate: Recreate the container even if the image is current

        Returns:
            InstallResult with the installed tag

        Raises:
            PullError: No image for this architecture, or the pull failed
            FilesystemError: Bind files could not be provisioned
            CreateError: The engine rejected the container config
        """
        with self._exclusive(descriptor.name):
            return await self._install(descriptor, bind_props, options, recreate)

    async def update(
        self,
        descriptor: ExtensionDescriptor,
        options: Optional[ExtensionOptions] = None,
        bind_props: Optional[BindProps] = None,
    ) -> InstallResult:
        """Re-pull and recreate an installed extension.

        Without ``options`` the current container is introspected first so
        its environment, devices, and binds carry over.
        """
        with self._exclusive(descriptor.name):
            if options is None:
                options = await self.recover_options(descriptor, bind_props)
            return await self._install(descriptor, bind_props, options, recreate=True)

    async def _install(
        self,
        descriptor: ExtensionDescriptor,
        bind_props: Optional[BindProps],
        options: Optional[ExtensionOptions],
        recreate: bool,
    ) -> InstallResult:
        name = descriptor.name
        image = descriptor.image
        if image is None:
            raise PullError(f"{name} is not distributed as a container image")

        arch = await self.arch()
        ref = image.reference(arch)
        if ref is None:
            raise PullError(f'No image available for "{arch}" architecture')

        builder = ContainerConfigBuilder(image.config)
        if options:
            builder.add_env(options.env).add_devices(options.devices).add_binds(options.binds)

        if image.binds and bind_props:
            await self.binds.provision(builder, image.binds, bind_props)

        progress = await self.pull(name, ref)
        existing = await self.engine.inspect_container(name)

        if progress.up_to_date and existing and not recreate:
            logger.info(f"{name}: {progress.final_status}")
            await self.refresh_installed(name)
            return InstallResult(tag=ref.tag, up_to_date=True)

        # Only now, with the new image in place, is the old container expendable
        if existing:
            builder.inherit_log_config((existing.get("HostConfig") or {}).get("LogConfig"))
            await self._terminate(name, existing)
            logger.info(f"Removing container {name}")
            await self.engine.remove_container(name)

        config = builder.build(str(ref))
        logger.debug(f"Create config for {name}: {config}")
        await self.engine.create_container(name, config)
        logger.info(f"✓ Container {name} created from {ref}")

        await self.refresh_installed(name)
        return InstallResult(tag=ref.tag)

    async def pull(self, name: str, ref: ImageRef) -> PullProgress:
        """Pull an image, reporting layer progress for ``name``."""
        callback = None
        if self.on_progress:
            callback = lambda layers: self.on_progress(name, layers)  # noqa: E731

        progress = PullProgress(on_progress=callback)
        logger.info(f"Pulling {ref}")
        async for event in self.engine.pull(ref.repository, ref.tag):
            progress.feed(event)
        return progress

    async def recover_options(
        self,
        descriptor: ExtensionDescriptor,
        bind_props: Optional[BindProps] = None,
    ) -> ExtensionOptions:
        """Rebuild install options from the extension's current container."""
        info = await self.engine.inspect_container(descriptor.name)
        if info is None:
            raise EngineError(f"{descriptor.name} is not installed")
        return options_from_container(info, descriptor, bind_props)

    # ==================== Uninstall ====================

    async def uninstall(self, name: str) -> None:
        """Stop and remove the container, then remove its image."""
        with self._exclusive(name):
            info = await self.engine.inspect_container(name)
            if info is None:
                raise EngineError(f"{name} is not installed")

            image = (info.get("Config") or {}).get("Image") or info.get("Image")

            await self._terminate(name, info)
            logger.info(f"Removing container {name}")
            await self.engine.remove_container(name)
            if image:
                logger.info(f"Removing image {image}")
                await self.engine.remove_image(image)

            self.installed.pop(name, None)
            await self.refresh_installed()

    # ==================== Start / stop ====================

    async def start(self, name: str) -> ExtensionStatus:
        """Start the container and make it survive engine restarts."""
        with self._exclusive(name):
            logger.info(f"Starting container {name}")
            await self.engine.start_container(name)

            info = await self._inspect_required(name)
            record = self._record_from_inspect(name, info)
            await self.engine.update_restart_policy(name, RESTART_POLICY_UNLESS_STOPPED)

            logger.info(f"✓ Container {name} {record.state}")
            return self.get_status(name)

    async def stop(self, name: str) -> ExtensionStatus:
        """User-initiated graceful stop."""
        with self._exclusive(name):
            await self._stop(name)
            return self.get_status(name)

    async def terminate(self, name: str) -> ExtensionStatus:
        """Internal stop ahead of an update, uninstall, or restart.

        A container ending up "exited" is recorded as ``terminated`` so it
        can be told apart from one the user stopped.
        """
        with self._exclusive(name):
            await self._terminate(name)
            return self.get_status(name)

    async def restart(self, name: str) -> ExtensionStatus:
        with self._exclusive(name):
            await self._terminate(name)

        return await self.start(name)

    async def _stop(self, name: str) -> Optional[str]:
        logger.info(f"Stopping container {name}")
        await self.engine.stop_container(name, timeout=self.stop_timeout)
        info = await self._inspect_required(name)
        return self._record_from_inspect(name, info).state

    async def _terminate(self, name: str, info: Optional[Dict[str, Any]] = None) -> None:
        if info is None:
            info = await self.engine.inspect_container(name)
        if not info or _native_state(info) != "running":
            return

        state = await self._stop(name)
        if state == "exited":
            self.installed[name].state = TERMINATED

    async def _inspect_required(self, name: str) -> Dict[str, Any]:
        info = await self.engine.inspect_container(name)
        if info is None:
            raise EngineError(f"Container {name} not found")
        return info

    def _record_from_inspect(self, name: str, info: Dict[str, Any]) -> InstalledRecord:
        record = self.installed.get(name)
        if record is None:
            image = (info.get("Config") or {}).get("Image", "")
            record = InstalledRecord(tag=parse_image_ref(image).tag or DEFAULT_TAG)
            self.installed[name] = record

        state_info = info.get("State") or {}
        record.state = _native_state(info)
        record.started_at = parse_engine_time(state_info.get("StartedAt")) if record.state == "running" else None
        return record

    # ==================== Status ====================

    def get_status(self, name: str) -> ExtensionStatus:
        """Derive the generic status from the installed table."""
        record = self.installed.get(name)
        if record is None:
            return ExtensionStatus(state=ExtensionState.NOT_INSTALLED)

        state = _NATIVE_STATES.get(record.state or "", ExtensionState.INSTALLED)
        uptime = None
        if state == ExtensionState.RUNNING and record.started_at:
            uptime = datetime.now(timezone.utc) - record.started_at

        return ExtensionStatus(state=state, tag=record.tag, uptime=uptime)

    async def refresh_installed(self, name: Optional[str] = None) -> Dict[str, InstalledRecord]:
        """Rebuild the installed table from the engine's container list.

        Args:
            name: Only refresh this extension

        Returns:
            Records found by this refresh
        """
        containers = await self.engine.list_containers(name=name)
        found: Dict[str, InstalledRecord] = {}

        for container in containers:
            names = container.get("Names") or []
            if not names:
                continue
            container_name = names[0].lstrip('/')
            if name and container_name != name:
                # The engine's name filter matches substrings
                continue

            state = (container.get("State") or "").lower()
            image = container.get("Image") or ""
            record = self.installed.get(container_name)
            tag = None if image.startswith("sha256:") else parse_image_ref(image).tag or DEFAULT_TAG

            if record is None:
                record = InstalledRecord(tag=tag or DEFAULT_TAG, state=state)
            else:
                record.tag = tag or record.tag
                if record.state != TERMINATED or state == "running":
                    record.state = state

            if record.state == "running" and record.started_at is None:
                info = await self.engine.inspect_container(container_name)
                if info:
                    record.started_at = parse_engine_time((info.get("State") or {}).get("StartedAt"))
            elif record.state != "running":
                record.started_at = None

            found[container_name] = record

        if name:
            if name in found:
                self.installed[name] = found[name]
            else:
                self.installed.pop(name, None)
        else:
            self.installed = found

        return found

    # ==================== Diagnostics ====================

    async def get_log(self, name: str, dest: Path) -> int:
        """Write the container's demultiplexed stdout/stderr to ``dest``.

        Returns:
            Number of bytes written
        """
        info = await self._inspect_required(name)
        raw = await self.engine.container_logs(name)
        tty = bool((info.get("Config") or {}).get("Tty"))
        data = raw if tty else demultiplex(raw)

        try:
            await asyncio.to_thread(_write_bytes, Path(dest), data)
        except OSError as e:
            raise FilesystemError(f"Cannot write log of {name} to {dest}: {e}") from e

        logger.debug(f"Captured {len(data)} bytes of {name} log in {dest}")
        return len(data)


def options_from_container(
    info: Dict[str, Any],
    descriptor: ExtensionDescriptor,
    bind_props: Optional[BindProps] = None,
) -> ExtensionOptions:
    """Recover install options from a container inspection.

    Environment variables are recovered only for keys the descriptor
    declares as options. Devices and binds are recovered unless they come
    from the descriptor's template or from Dockhand's own bind provisioning.
    """
    image = descriptor.image
    template = ContainerConfigBuilder(image.config if image else None)
    schema = image.options if image else None

    config = info.get("Config") or {}
    host_config = info.get("HostConfig") or {}

    env_keys = set(schema.env) if schema else set()
    env: Dict[str, str] = {}
    for entry in config.get("Env") or []:
        key, sep, value = entry.partition('=')
        if sep and key in env_keys and entry not in template.env:
            env[key] = value

    template_devices = {d.path_on_host for d in template.devices}
    devices = {
        d["PathOnHost"]: d.get("PathInContainer") or d["PathOnHost"]
        for d in host_config.get("Devices") or []
        if d.get("PathOnHost") and d["PathOnHost"] not in template_devices
    }

    provisioned = set(image.binds if image else [])
    if bind_props:
        provisioned.add(str(bind_props.root))
    template_binds = {b.target for b in template.binds}
    binds: Dict[str, str] = {}
    for spec in host_config.get("Binds") or []:
        bind = BindMapping.parse(spec)
        if bind.target in provisioned or bind.target in template_binds:
            continue
        binds[bind.source] = bind.target

    return ExtensionOptions(env=env, devices=devices, binds=binds)


def _native_state(info: Dict[str, Any]) -> str:
    return ((info.get("State") or {}).get("Status") or "").lower()


_FRACTION = re.compile(r"\.(\d+)")


def parse_engine_time(value: Optional[str]) -> Optional[datetime]:
    """Parse an engine RFC 3339 timestamp (nanosecond precision).

    Returns None for missing values and the engine's zero time.
    """
    if not value or value.startswith("0001-01-01"):
        return None

    value = value.replace("Z", "+00:00")
    value = _FRACTION.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, count=1)
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        logger.debug(f"Unparseable engine timestamp: {value}")
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _write_bytes(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, 'wb') as f:
        f.write(data)
