import asyncio
import logging

from zeroconf import ServiceStateChange
from zeroconf.asyncio import AsyncServiceBrowser, AsyncServiceInfo

from murmurd.network.broadcast import SERVICE_TYPE

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

RESOLVE_TIMEOUT_MS = 3000


class Discovery:
    """Directory of user ids announced on the local network."""

    def __init__(self, zeroconf):
        self.zeroconf = zeroconf
        self.peers = {}     # {user_id: (ip, port)}
        self._names = {}    # {service name: user_id}
        self._tasks = set()
        self.browser = None

    async def start_service(self):
        #watches local network for peers
        self.browser = AsyncServiceBrowser(
            self.zeroconf.zeroconf, [SERVICE_TYPE], handlers=[self._on_service_state_change]
        )

    def _on_service_state_change(self, zeroconf, service_type, name, state_change):
        if state_change is ServiceStateChange.Removed:
            self.forget(name)
            return
        task = asyncio.ensure_future(self._resolve(service_type, name))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _resolve(self, service_type, name):
        info = AsyncServiceInfo(service_type, name)
        if not await info.async_request(self.zeroconf.zeroconf, RESOLVE_TIMEOUT_MS):
            logger.debug(f"Could not resolve {name}")
            return
        user_id = (info.properties or {}).get(b"user_id")
        addresses = info.parsed_addresses()
        if not user_id or not addresses:
            return
        self.add(name, user_id.decode("utf-8"), addresses[0], info.port)

    def add(self, name, user_id, ip, port):
        self._names[name] = user_id
        self.peers[user_id] = (ip, port)
        logger.debug(f"Found peer {user_id} at {ip}:{port}")

    def forget(self, name):
        user_id = self._names.pop(name, None)
        if user_id is not None and self.peers.pop(user_id, None):
            logger.debug(f"Peer left: {user_id}")

    def lookup(self, user_id):
        return self.peers.get(user_id)

    async def stop(self):
        if self.browser is not None:
            await self.browser.async_cancel()
            self.browser = None
        for task in list(self._tasks):
            task.cancel()
