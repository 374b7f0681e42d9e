from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import yaml

from murmurd.errors import ConfigError

DEFAULT_PORT = 44678
DEFAULT_SOCKET = "/tmp/murmurd-svc.sock"

# Written to <datadir>/murmurd.yaml on first run
DEFAULT_CONFIG = """\
# murmurd configuration
#
# Fill in identity.user_id and identity.passphrase, then start murmurd again.
# A key pair is generated for this identity on the next start.

identity:
  user_id: ""
  passphrase: ""

network:
  address: "0.0.0.0"
  port: 44678
  # ask the router for a port mapping over UPnP
  portmap: true
  # announce this identity on the local network over mDNS
  discovery: true
  tls: false
  certfile: null
  keyfile: null

ipc:
  # defaults to /tmp/murmurd-svc.sock
  socket: null

# do not open any network transport; history is kept in memory only
passive: false

# skip TLS certificate validation for outbound peer connections
promiscuous: false
"""


@dataclass(frozen=True)
class IdentityConfig:
    user_id: str
    passphrase: str = ""


@dataclass(frozen=True)
class NetworkConfig:
    address: str = "0.0.0.0"
    port: int = DEFAULT_PORT
    portmap: bool = True
    discovery: bool = True
    tls: bool = False
    certfile: Optional[str] = None
    keyfile: Optional[str] = None


@dataclass(frozen=True)
class IpcConfig:
    socket: str = DEFAULT_SOCKET


@dataclass(frozen=True)
class Configuration:
    identity: IdentityConfig
    network: NetworkConfig = field(default_factory=NetworkConfig)
    ipc: IpcConfig = field(default_factory=IpcConfig)
    passive: bool = False
    promiscuous: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Configuration":
        if not isinstance(data, dict):
            raise ConfigError("config must be a mapping")

        identity = _section(data, "identity")
        user_id = str(identity.get("user_id") or "").strip()
        if not user_id:
            raise ConfigError("identity.user_id is not set")
        passphrase = identity.get("passphrase") or ""

        network = _section(data, "network")
        try:
            port = int(network.get("port", DEFAULT_PORT))
        except (TypeError, ValueError):
            raise ConfigError(f"network.port is not a number: {network.get('port')!r}")
        if not 0 <= port <= 65535:
            raise ConfigError(f"network.port out of range: {port}")

        tls = bool(network.get("tls", False))
        certfile = network.get("certfile")
        keyfile = network.get("keyfile")
        if tls and not (certfile and keyfile):
            raise ConfigError("network.tls requires network.certfile and network.keyfile")

        ipc = _section(data, "ipc")

        return cls(
            identity=IdentityConfig(user_id=user_id, passphrase=str(passphrase)),
            network=NetworkConfig(
                address=str(network.get("address") or "0.0.0.0"),
                port=port,
                portmap=bool(network.get("portmap", True)),
                discovery=bool(network.get("discovery", True)),
                tls=tls,
                certfile=certfile,
                keyfile=keyfile,
            ),
            ipc=IpcConfig(socket=ipc.get("socket") or DEFAULT_SOCKET),
            passive=bool(data.get("passive", False)),
            promiscuous=bool(data.get("promiscuous", False)),
        )


def _section(data, name):
    section = data.get(name) or {}
    if not isinstance(section, dict):
        raise ConfigError(f"'{name}' must be a mapping")
    return section


def parse_config(text: str) -> Configuration:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid YAML: {e}") from e
    return Configuration.from_dict(data or {})


def load_config(path) -> Configuration:
    with open(path, "rb") as f:
        raw = f.read()
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise ConfigError(f"{path} is not valid UTF-8: {e}") from e
    return parse_config(text)
