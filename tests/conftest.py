"""Shared test fixtures for Dockhand tests."""
import asyncio
import copy
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import pytest

from dockhand.catalog.models import ExtensionDescriptor
from dockhand.core.config import DockhandConfig, Features
from dockhand.core.errors import ConnectivityError, CreateError, EngineError, PullError
from dockhand.engine.client import ContainerEngine


class FakeEngine(ContainerEngine):
    """In-memory container engine.

    ``registry`` maps ``repo:tag`` to the digest a pull would fetch;
    ``images`` holds what was already pulled. A pull of an unchanged digest
    ends with the engine's up-to-date status line.
    """

    def __init__(self, arch: str = "amd64", os_name: str = "linux"):
        self.version_info = {"Version": "24.0.7", "Os": os_name, "Arch": arch, "ApiVersion": "1.43"}
        self.reachable = True
        self.registry: Dict[str, str] = {}
        self.images: Dict[str, str] = {}
        self.containers: Dict[str, Dict[str, Any]] = {}
        self.logs: Dict[str, bytes] = {}
        self.calls: List[tuple] = []
        self.fail: Dict[str, Exception] = {}

        self.active_creates = 0
        self.max_active_creates = 0

    def _record(self, method: str, *args) -> None:
        self.calls.append((method,) + args)
        if method in self.fail:
            raise self.fail[method]

    def calls_to(self, method: str) -> List[tuple]:
        return [call for call in self.calls if call[0] == method]

    def publish(self, repo: str, tag: str, digest: str = "sha256:1") -> None:
        self.registry[f"{repo}:{tag}"] = digest

    def add_container(self, name: str, image: str, status: str = "running", **extra) -> Dict[str, Any]:
        container = {
            "Id": f"id-{name}",
            "Name": f"/{name}",
            "Config": {"Image": image, "Env": [], "Tty": False},
            "HostConfig": {"Binds": [], "Devices": [], "RestartPolicy": {"Name": ""}},
            "State": {"Status": status, "StartedAt": _now() if status == "running" else "0001-01-01T00:00:00Z"},
            "Mounts": [],
        }
        for key, value in extra.items():
            if isinstance(value, dict) and isinstance(container.get(key), dict):
                container[key].update(value)
            else:
                container[key] = value
        self.containers[name] = container
        return container

    async def version(self) -> Dict[str, Any]:
        self._record("version")
        if not self.reachable:
            raise ConnectivityError("Container engine not reachable at unix:///var/run/docker.sock")
        return dict(self.version_info)

    async def pull(self, repository: str, tag: str):
        self._record("pull", repository, tag)
        ref = f"{repository}:{tag}"
        if ref not in self.registry:
            raise PullError(f"manifest for {ref} not found")

        yield {"status": f"Pulling from {repository}", "id": tag}
        await asyncio.sleep(0)

        if self.images.get(ref) == self.registry[ref]:
            yield {"status": f"Status: Image is up to date for {ref}"}
            return

        yield {"status": "Downloading", "id": "layer1", "progressDetail": {"current": 50, "total": 100}}
        await asyncio.sleep(0)
        yield {"status": "Pull complete", "id": "layer1", "progressDetail": {}}
        self.images[ref] = self.registry[ref]
        yield {"status": f"Status: Downloaded newer image for {ref}"}

    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        self._record("inspect_container", name)
        container = self.containers.get(name)
        return copy.deepcopy(container) if container else None

    async def create_container(self, name: str, config: Dict[str, Any]) -> str:
        self._record("create_container", name, copy.deepcopy(config))
        self.active_creates += 1
        self.max_active_creates = max(self.max_active_creates, self.active_creates)
        try:
            await asyncio.sleep(0)
            if name in self.containers:
                raise CreateError(f"Conflict. The container name \"/{name}\" is already in use")
            container_config = {k: v for k, v in copy.deepcopy(config).items() if k != "HostConfig"}
            container_config.setdefault("Tty", False)
            self.containers[name] = {
                "Id": f"id-{name}",
                "Name": f"/{name}",
                "Config": container_config,
                "HostConfig": copy.deepcopy(config.get("HostConfig") or {}),
                "State": {"Status": "created", "StartedAt": "0001-01-01T00:00:00Z"},
                "Mounts": [],
            }
        finally:
            self.active_creates -= 1
        return f"id-{name}"

    def _existing(self, name: str) -> Dict[str, Any]:
        if name not in self.containers:
            raise EngineError(f"No such container: {name}")
        return self.containers[name]

    async def start_container(self, name: str) -> None:
        self._record("start_container", name)
        self._existing(name)["State"] = {"Status": "running", "StartedAt": _now()}

    async def stop_container(self, name: str, timeout: int = 10) -> None:
        self._record("stop_container", name, timeout)
        state = self._existing(name)["State"]
        state["Status"] = "exited"

    async def restart_container(self, name: str, timeout: int = 10) -> None:
        self._record("restart_container", name, timeout)
        self._existing(name)["State"] = {"Status": "running", "StartedAt": _now()}

    async def remove_container(self, name: str, force: bool = False) -> None:
        self._record("remove_container", name, force)
        container = self._existing(name)
        if container["State"]["Status"] == "running" and not force:
            raise EngineError(f"You cannot remove a running container {name}")
        del self.containers[name]

    async def update_restart_policy(self, name: str, policy: Dict[str, Any]) -> None:
        self._record("update_restart_policy", name, dict(policy))
        self._existing(name)["HostConfig"]["RestartPolicy"] = dict(policy)

    async def remove_image(self, image: str) -> None:
        self._record("remove_image", image)
        if image not in self.images:
            raise EngineError(f"No such image: {image}")
        del self.images[image]

    async def list_containers(self, name: Optional[str] = None, label: Optional[str] = None) -> List[Dict[str, Any]]:
        self._record("list_containers", name)
        return [
            {
                "Names": [f"/{container_name}"],
                "Image": container["Config"]["Image"],
                "State": container["State"]["Status"],
            }
            for container_name, container in self.containers.items()
            if not name or name in container_name
        ]

    async def container_logs(self, name: str) -> bytes:
        self._record("container_logs", name)
        self._existing(name)
        return self.logs.get(name, b"")


def _now() -> str:
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f") + "123Z"


def frame(stream: int, payload: bytes) -> bytes:
    """One multiplexed log frame."""
    return bytes([stream, 0, 0, 0]) + len(payload).to_bytes(4, "big") + payload


@pytest.fixture
def engine():
    return FakeEngine()


@pytest.fixture
def roon_descriptor():
    """Image-backed descriptor with options and a persistent bind."""
    return ExtensionDescriptor.model_validate({
        "display_name": "Deep Harmony",
        "author": "Jane Doe",
        "description": "Harmony hub controller",
        "image": {
            "repo": "janedoe/deep-harmony",
            "tags": {"amd64": "1.2.0", "arm64": "1.2.0-arm64"},
            "config": {
                "Env": ["TZ=UTC"],
                "HostConfig": {"RestartPolicy": {"Name": "always"}, "NetworkMode": "bridge"},
            },
            "binds": ["/home/node/config.json"],
            "options": {
                "env": {"HUB_HOST": "192.168.1.10:Hub address"},
                "devices": ["/dev/ttyUSB0:Serial port"],
            },
        },
    })


@pytest.fixture
def plain_descriptor():
    """Image-backed descriptor without binds or options."""
    return ExtensionDescriptor.model_validate({
        "display_name": "Web Radio",
        "image": {"repo": "someone/web-radio", "tags": {"amd64": "latest"}},
    })


@pytest.fixture
def catalog_document(roon_descriptor, plain_descriptor):
    return {
        "version": "1.0.3",
        "categories": [
            {
                "display_name": "Devices",
                "extensions": [
                    roon_descriptor.model_dump(exclude_none=True),
                    {
                        "display_name": "ARM Only",
                        "image": {"repo": "someone/arm-only", "tags": {"arm64": "1.0"}},
                    },
                ],
            },
            {
                "display_name": "Streaming",
                "extensions": [plain_descriptor.model_dump(exclude_none=True)],
            },
        ],
    }


@pytest.fixture
def config(tmp_path):
    return DockhandConfig(
        data_root=tmp_path / "data",
        log_dir=tmp_path / "log",
        catalog_url="",
        update_time="",
        features=Features(),
    )
