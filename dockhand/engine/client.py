"""Container engine access.

``ContainerEngine`` is the narrow set of engine calls the lifecycle manager
needs. ``DockerEngine`` implements it over the Docker SDK's low-level API
client; every blocking SDK call runs in a worker thread so the event loop
only ever suspends at engine calls.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator, Dict, List, Optional
from urllib.parse import quote

import docker
import requests
from docker.errors import APIError, DockerException, NotFound

from dockhand.core.errors import ConnectivityError, CreateError, EngineError, PullError
from dockhand.core.logger import get_logger

logger = get_logger(__name__)

DEFAULT_ENGINE_URL = "unix:///var/run/docker.sock"

_TRANSPORT_ERRORS = (DockerException, requests.exceptions.RequestException)


class ContainerEngine(ABC):
    """Abstract interface to one local container engine."""

    @abstractmethod
    async def version(self) -> Dict[str, Any]:
        """Engine version info with at least ``Version``, ``Os`` and ``Arch``.

        Raises:
            ConnectivityError: Engine not reachable
        """

    @abstractmethod
    def pull(self, repository: str, tag: str) -> AsyncIterator[Dict[str, Any]]:
        """Pull ``repository:tag``, yielding the engine's progress events.

        Raises:
            PullError: Registry or engine refused the pull
        """

    @abstractmethod
    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        """Inspect a container; None if it does not exist."""

    @abstractmethod
    async def create_container(self, name: str, config: Dict[str, Any]) -> str:
        """Create a container from an Engine API create-config.

        Returns:
            New container id

        Raises:
            CreateError: Engine rejected the config
        """

    @abstractmethod
    async def start_container(self, name: str) -> None:
        pass

    @abstractmethod
    async def stop_container(self, name: str, timeout: int = 10) -> None:
        pass

    @abstractmethod
    async def restart_container(self, name: str, timeout: int = 10) -> None:
        pass

    @abstractmethod
    async def remove_container(self, name: str, force: bool = False) -> None:
        pass

    @abstractmethod
    async def update_restart_policy(self, name: str, policy: Dict[str, Any]) -> None:
        pass

    @abstractmethod
    async def remove_image(self, image: str) -> None:
        pass

    @abstractmethod
    async def list_containers(
        self,
        name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        """List all containers (running or not), optionally filtered."""

    @abstractmethod
    async def container_logs(self, name: str) -> bytes:
        """Raw log stream of a container, multiplexed unless it has a TTY."""


class DockerEngine(ContainerEngine):
    """Docker Engine API over a local socket."""

    def __init__(self, base_url: str = DEFAULT_ENGINE_URL, timeout: int = 120):
        """Initialize engine access.

        Args:
            base_url: Engine endpoint (unix socket or tcp URL)
            timeout: Per-request timeout in seconds
        """
        self.base_url = base_url
        self.timeout = timeout
        self._api: Optional[docker.APIClient] = None

    async def _client(self) -> docker.APIClient:
        if self._api is None:
            try:
                # Negotiates the API version, so it talks to the engine
                self._api = await asyncio.to_thread(
                    docker.APIClient, base_url=self.base_url, timeout=self.timeout
                )
            except _TRANSPORT_ERRORS as e:
                raise ConnectivityError(f"Container engine not reachable at {self.base_url}: {e}") from e
        return self._api

    async def _call(self, method: str, *args, **kwargs) -> Any:
        api = await self._client()
        try:
            return await asyncio.to_thread(getattr(api, method), *args, **kwargs)
        except APIError as e:
            raise EngineError(_explain(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise EngineError(f"{method} failed: {e}") from e

    async def version(self) -> Dict[str, Any]:
        api = await self._client()
        try:
            return await asyncio.to_thread(api.version)
        except _TRANSPORT_ERRORS as e:
            raise ConnectivityError(f"Container engine not reachable at {self.base_url}: {e}") from e

    async def pull(self, repository: str, tag: str) -> AsyncIterator[Dict[str, Any]]:
        api = await self._client()
        logger.debug(f"Pulling {repository}:{tag}")
        try:
            stream = await asyncio.to_thread(api.pull, repository, tag=tag, stream=True, decode=True)
            while True:
                event = await asyncio.to_thread(next, stream, None)
                if event is None:
                    return
                yield event
        except APIError as e:
            raise PullError(_explain(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise PullError(f"Pull of {repository}:{tag} failed: {e}") from e

    async def inspect_container(self, name: str) -> Optional[Dict[str, Any]]:
        api = await self._client()
        try:
            return await asyncio.to_thread(api.inspect_container, name)
        except NotFound:
            return None
        except APIError as e:
            raise EngineError(_explain(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise EngineError(f"Inspect of {name} failed: {e}") from e

    async def create_container(self, name: str, config: Dict[str, Any]) -> str:
        api = await self._client()
        try:
            result = await asyncio.to_thread(api.create_container_from_config, config, name)
        except APIError as e:
            raise CreateError(_explain(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise CreateError(f"Create of {name} failed: {e}") from e

        for warning in result.get("Warnings") or []:
            logger.warning(f"{name}: {warning}")
        return result.get("Id", "")

    async def start_container(self, name: str) -> None:
        await self._call("start", name)

    async def stop_container(self, name: str, timeout: int = 10) -> None:
        await self._call("stop", name, timeout=timeout)

    async def restart_container(self, name: str, timeout: int = 10) -> None:
        await self._call("restart", name, timeout=timeout)

    async def remove_container(self, name: str, force: bool = False) -> None:
        await self._call("remove_container", name, force=force)

    async def update_restart_policy(self, name: str, policy: Dict[str, Any]) -> None:
        await self._call("update_container", name, restart_policy=policy)

    async def remove_image(self, image: str) -> None:
        await self._call("remove_image", image)

    async def list_containers(
        self,
        name: Optional[str] = None,
        label: Optional[str] = None,
    ) -> List[Dict[str, Any]]:
        filters: Dict[str, List[str]] = {}
        if name:
            filters["name"] = [name]
        if label:
            filters["label"] = [label]
        return await self._call("containers", all=True, filters=filters or None)

    async def container_logs(self, name: str) -> bytes:
        api = await self._client()
        try:
            return await asyncio.to_thread(_raw_logs, api, name)
        except APIError as e:
            raise EngineError(_explain(e)) from e
        except _TRANSPORT_ERRORS as e:
            raise EngineError(f"Log fetch of {name} failed: {e}") from e


def _raw_logs(api: docker.APIClient, name: str) -> bytes:
    """Fetch the undecoded log body of a container.

    ``APIClient.logs()`` already strips the stream framing, which would hide
    the stdout/stderr split. ``APIClient`` is a ``requests.Session`` bound to
    the engine, so the endpoint is requested directly, using only its public
    ``base_url`` and ``api_version``.
    """
    url = f"{api.base_url}/v{api.api_version}/containers/{quote(name, safe='')}/logs"
    response = api.get(url, params={"stdout": 1, "stderr": 1, "timestamps": 0}, timeout=api.timeout)
    if response.status_code == 404:
        raise EngineError(f"No such container: {name}")
    response.raise_for_status()
    return response.content


def _explain(error: APIError) -> str:
    explanation = getattr(error, "explanation", None)
    return str(explanation or error)
