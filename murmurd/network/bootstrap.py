import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Union

from murmurd.network.connection import Connection
from murmurd.network.upnp import UPnPPortMapper
from murmurd.session.store import MessageStore

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


@dataclass(frozen=True)
class Mapped:
    external_address: str


@dataclass(frozen=True)
class Unmapped:
    reason: str


PortMapping = Union[Mapped, Unmapped]


@dataclass(frozen=True)
class NetworkParams:
    """Parameters a Connection is built with.

    ``forward_port`` is always False here: when a mapping exists it was made
    by the bootstrapper, not by the connection.
    """

    address: str
    port: int
    forward_port: bool = False
    external_address: Optional[str] = None
    degraded: bool = False


def select_connection_params(network, outcome: Optional[PortMapping] = None) -> NetworkParams:
    """Pick Connection parameters from the network config and the UPnP outcome.

    ``outcome`` is None for direct mode. An Unmapped outcome still yields a
    usable (degraded) connection, startup never stops here.
    """
    if isinstance(outcome, Mapped):
        return NetworkParams(
            address=network.address,
            port=network.port,
            external_address=outcome.external_address,
        )
    if isinstance(outcome, Unmapped):
        return NetworkParams(address=network.address, port=network.port, degraded=True)
    return NetworkParams(address=network.address, port=network.port)


class NetworkBootstrapper:
    def __init__(self, config, store_path, mapper=None, connection_factory=Connection):
        self.config = config
        self.store_path = store_path
        self.mapper = mapper if mapper is not None else UPnPPortMapper()
        self.connection_factory = connection_factory
        # Set once the router accepted a mapping, so it can be removed on shutdown
        self.mapping = None

    async def connect(self) -> Optional[Connection]:
        network = self.config.network

        if self.config.passive:
            logger.info("Passive mode: no network connection will be set up")
            return None

        if not network.portmap:
            return self._build(select_connection_params(network))

        outcome = await self.map_port()
        if isinstance(outcome, Unmapped):
            logger.warning(f"Port mapping failed: {outcome.reason}")
            logger.warning("Session will be initialized without a port mapping")
        else:
            self.mapping = outcome
            logger.info(f"Reachable at {outcome.external_address}:{network.port}")
        return self._build(select_connection_params(network, outcome))

    async def map_port(self) -> PortMapping:
        port = self.config.network.port
        logger.info(f"Creating port mapping {port} <--> {port}")
        # No timeout: a router that never answers stalls startup here
        try:
            await asyncio.to_thread(self.mapper.map_port, port)
        except Exception as e:
            return Unmapped(reason=f"mapping request failed: {e}")
        try:
            ip = await asyncio.to_thread(self.mapper.external_ip)
        except Exception as e:
            return Unmapped(reason=f"external IP lookup failed: {e}")
        return Mapped(external_address=ip)

    def _build(self, params):
        return self.connection_factory(
            params,
            MessageStore(self.store_path),
            user_id=self.config.identity.user_id,
            network=self.config.network,
        )
