import logging

import miniupnpc

from murmurd.errors import TransportError

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class UPnPPortMapper:
    """Router port mapping over UPnP.

    All calls block on the network; run them via asyncio.to_thread().
    """

    def __init__(self, discover_delay=2000, description="murmurd"):
        self.discover_delay = discover_delay
        self.description = description
        self._upnp = None

    def _gateway(self):
        if self._upnp is None:
            upnp = miniupnpc.UPnP()
            upnp.discoverdelay = self.discover_delay
            if upnp.discover() == 0:
                raise TransportError("No UPnP devices found")
            upnp.selectigd()
            self._upnp = upnp
        return self._upnp

    def map_port(self, port):
        # Same port on both sides, no lease expiry
        upnp = self._gateway()
        logger.debug(f"Requesting mapping {port} <--> {upnp.lanaddr}:{port}")
        if not upnp.addportmapping(port, "TCP", upnp.lanaddr, port, self.description, ""):
            raise TransportError(f"Router refused mapping for port {port}")

    def external_ip(self):
        ip = self._gateway().externalipaddress()
        if not ip:
            raise TransportError("Router did not report an external IP address")
        return ip

    def unmap_port(self, port):
        if self._upnp is None:
            return
        try:
            self._upnp.deleteportmapping(port, "TCP")
            logger.debug(f"Removed mapping for port {port}")
        except Exception as e:
            logger.warning(f"UPnP cleanup failed for port {port}: {e}")
