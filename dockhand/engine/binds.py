"""Host-side provisioning of persistent bind mounts."""
import asyncio
import os
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from typing import List, Optional, Sequence

from dockhand.core.errors import FilesystemError
from dockhand.core.logger import get_logger
from .client import ContainerEngine
from .config_builder import ContainerConfigBuilder

logger = get_logger(__name__)

# Containerized processes run under unknown UIDs
BIND_FILE_MODE = 0o666


@dataclass
class BindProps:
    """Where an extension's bind files live.

    Attributes:
        root: Persistent data root as seen by Dockhand
        name: Extension name; its binds live under ``<root>/binds/<name>``
        volume_owner: Container whose mounts may hold ``root`` (Dockhand's
            own container when it runs containerized)
    """

    root: Path
    name: str
    volume_owner: Optional[str] = None

    def __post_init__(self):
        self.root = Path(self.root).absolute()

    @property
    def binds_path(self) -> PurePosixPath:
        return PurePosixPath("binds") / self.name

    @property
    def binds_dir(self) -> Path:
        return Path(self.root) / "binds" / self.name


@dataclass
class VolumeInfo:
    """A mount of the volume owner that contains the data root."""

    name: str
    source: str
    destination: str


@dataclass
class BindDescriptor:
    container_path: str
    host_path: str
    default: Optional[str] = None


class BindProvisioner:
    """Materialize declared bind files before a container is created.

    Each absolute bind path declared by a descriptor becomes an (initially
    empty) file under ``<root>/binds/<name>``. Existing files are left
    untouched so their content survives updates and re-creation.
    """

    def __init__(self, engine: ContainerEngine):
        self.engine = engine

    async def discover_volume(self, owner: Optional[str], root: Path) -> Optional[VolumeInfo]:
        """Find the mount of ``owner`` whose destination contains ``root``.

        Args:
            owner: Container to inspect (None when not containerized)
            root: Data root path inside that container

        Returns:
            VolumeInfo, or None when there is no such container or mount
        """
        if not owner:
            return None

        info = await self.engine.inspect_container(owner)
        if not info:
            return None

        root_path = PurePosixPath(str(root))
        for mount in info.get("Mounts") or []:
            destination = mount.get("Destination")
            if not destination:
                continue
            dest_path = PurePosixPath(destination)
            if root_path == dest_path or dest_path in root_path.parents:
                volume = VolumeInfo(
                    name=mount.get("Name") or mount.get("Source", ""),
                    source=mount.get("Source", ""),
                    destination=destination,
                )
                logger.debug(f"Data root {root} lives in volume {volume.name} ({volume.source})")
                return volume

        return None

    async def provision(
        self,
        builder: ContainerConfigBuilder,
        bind_paths: Sequence[str],
        props: BindProps,
    ) -> List[BindDescriptor]:
        """Create bind files and register their mappings on ``builder``.

        Args:
            builder: Config under construction
            bind_paths: Container paths declared by the descriptor
            props: Bind location for this extension

        Returns:
            The binds that were resolved, in declaration order

        Raises:
            FilesystemError: A directory or file could not be created
        """
        volume = await self.discover_volume(props.volume_owner, props.root)
        resolved: List[BindDescriptor] = []

        for path in bind_paths:
            if not path.startswith('/'):
                logger.debug(f"Ignoring relative bind path {path} for {props.name}")
                continue

            local_file = props.binds_dir / path.lstrip('/')
            host_path = self._host_path(props, path, volume) if volume else str(local_file)

            try:
                await asyncio.to_thread(self._materialize, local_file)
            except OSError as e:
                raise FilesystemError(f"Cannot provision bind {path} for {props.name}: {e}") from e

            builder.add_bind(host_path, path)
            resolved.append(BindDescriptor(container_path=path, host_path=host_path))

        if volume and builder.has_binds():
            # Attach the new container to the volume holding its bind files
            builder.add_bind(volume.name, str(props.root), read_only=True)

        return resolved

    @staticmethod
    def _host_path(props: BindProps, path: str, volume: VolumeInfo) -> str:
        root_in_volume = PurePosixPath(str(props.root)).relative_to(volume.destination)
        return str(PurePosixPath(volume.source) / root_in_volume / props.binds_path / path.lstrip('/'))

    @staticmethod
    def _materialize(file_path: Path) -> bool:
        """Create the directory chain and an empty world-writable file.

        Returns:
            True if the file was created, False if it already existed
        """
        file_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(file_path, 'x'):
                pass
        except FileExistsError:
            return False

        os.chmod(file_path, BIND_FILE_MODE)
        logger.debug(f"Created bind file {file_path}")
        return True
