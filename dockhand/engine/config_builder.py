"""Typed construction of container create-configs.

A descriptor ships a config template in Engine API shape (``Env``,
``HostConfig.Binds`` ...). Install options and provisioned binds are layered
on top through named sections instead of merging raw dicts.
"""
import copy
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

RESTART_POLICY_OFF = {"Name": "", "MaximumRetryCount": 0}
RESTART_POLICY_UNLESS_STOPPED = {"Name": "unless-stopped", "MaximumRetryCount": 0}
NETWORK_MODE = "host"
DEVICE_PERMISSIONS = "rwm"


@dataclass
class ExtensionOptions:
    """User supplied install options.

    Attributes:
        env: Environment variable name -> value
        devices: Host device path -> container device path
        binds: Host path -> container path
    """

    env: Dict[str, str] = field(default_factory=dict)
    devices: Dict[str, str] = field(default_factory=dict)
    binds: Dict[str, str] = field(default_factory=dict)

    def is_empty(self) -> bool:
        return not (self.env or self.devices or self.binds)

    def to_dict(self) -> Dict[str, Dict[str, str]]:
        return {'env': dict(self.env), 'devices': dict(self.devices), 'binds': dict(self.binds)}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ExtensionOptions":
        data = data or {}
        return cls(
            env={str(k): str(v) for k, v in (data.get('env') or {}).items()},
            devices={str(k): str(v) for k, v in (data.get('devices') or {}).items()},
            binds={str(k): str(v) for k, v in (data.get('binds') or {}).items()},
        )


@dataclass
class DeviceMapping:
    path_on_host: str
    path_in_container: str
    cgroup_permissions: str = DEVICE_PERMISSIONS

    def to_api(self) -> Dict[str, str]:
        return {
            "PathOnHost": self.path_on_host,
            "PathInContainer": self.path_in_container,
            "CgroupPermissions": self.cgroup_permissions,
        }

    @classmethod
    def from_api(cls, raw: Dict[str, str]) -> "DeviceMapping":
        return cls(
            path_on_host=raw.get("PathOnHost", ""),
            path_in_container=raw.get("PathInContainer", "") or raw.get("PathOnHost", ""),
            cgroup_permissions=raw.get("CgroupPermissions") or DEVICE_PERMISSIONS,
        )


@dataclass
class BindMapping:
    """A ``source:target[:ro]`` bind; source is a host path or a volume name."""

    source: str
    target: str
    read_only: bool = False

    def to_api(self) -> str:
        spec = f"{self.source}:{self.target}"
        return f"{spec}:ro" if self.read_only else spec

    @classmethod
    def parse(cls, spec: str) -> "BindMapping":
        parts = spec.split(':')
        if len(parts) < 2:
            return cls(source=spec, target=spec)
        modes = parts[2].split(',') if len(parts) > 2 else []
        return cls(source=parts[0], target=parts[1], read_only='ro' in modes)


class ContainerConfigBuilder:
    """Build an Engine API create-config from a descriptor template."""

    def __init__(self, template: Optional[Dict[str, Any]] = None):
        config = copy.deepcopy(template or {})
        host_config = config.pop("HostConfig", None) or {}

        self.env: List[str] = list(config.pop("Env", None) or [])
        self.volumes: Dict[str, Dict] = dict(config.pop("Volumes", None) or {})
        self.devices = [DeviceMapping.from_api(d) for d in host_config.pop("Devices", None) or []]
        self.binds = [BindMapping.parse(b) for b in host_config.pop("Binds", None) or []]
        self.log_config: Optional[Dict[str, Any]] = host_config.pop("LogConfig", None)

        # RestartPolicy and NetworkMode are forced at build time
        host_config.pop("RestartPolicy", None)
        host_config.pop("NetworkMode", None)

        self._host_config = host_config
        self._config = config

    # Environment section

    def add_env(self, env: Dict[str, str]) -> "ContainerConfigBuilder":
        for name, value in env.items():
            self.env.append(f"{name}={value}")
        return self

    # Devices section

    def add_devices(self, devices: Dict[str, str]) -> "ContainerConfigBuilder":
        for host, container in devices.items():
            self.devices.append(DeviceMapping(host, container or host))
        return self

    # Binds section

    def add_binds(self, binds: Dict[str, str]) -> "ContainerConfigBuilder":
        for host, container in binds.items():
            self.add_bind(host, container)
        return self

    def add_bind(self, source: str, target: str, read_only: bool = False) -> "ContainerConfigBuilder":
        self.binds.append(BindMapping(source, target, read_only))
        self.volumes.setdefault(target, {})
        return self

    def has_binds(self) -> bool:
        return bool(self.binds)

    def inherit_log_config(self, log_config: Optional[Dict[str, Any]]) -> "ContainerConfigBuilder":
        """Carry a prior container's log driver over unless the template sets one."""
        if self.log_config is None and log_config:
            self.log_config = copy.deepcopy(log_config)
        return self

    def build(self, image: str) -> Dict[str, Any]:
        """Return the create-config with restart policy off and host networking."""
        config = copy.deepcopy(self._config)
        config["Image"] = image

        if self.env:
            config["Env"] = list(self.env)

        volumes = dict(self.volumes)
        for bind in self.binds:
            volumes.setdefault(bind.target, {})
        if volumes:
            config["Volumes"] = volumes

        host_config = copy.deepcopy(self._host_config)
        if self.binds:
            host_config["Binds"] = [b.to_api() for b in self.binds]
        if self.devices:
            host_config["Devices"] = [d.to_api() for d in self.devices]
        if self.log_config:
            host_config["LogConfig"] = copy.deepcopy(self.log_config)

        # Restart policy stays off until the first explicit start, so a
        # daemon restart does not launch extensions nobody started
        host_config["RestartPolicy"] = dict(RESTART_POLICY_OFF)
        host_config["NetworkMode"] = NETWORK_MODE

        config["HostConfig"] = host_config
        return config
