import asyncio
import hashlib
import logging
import ssl

from zeroconf.asyncio import AsyncZeroconf

from murmurd.config import NetworkConfig
from murmurd.errors import MurmurError, TransportError
from murmurd.network.broadcast import Broadcast
from murmurd.network.discovery import Discovery
from murmurd.protocol.json_handler import MAX_LINE, recv_json, send_json

# Set up module-level logging
logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class Connection:
    """Peer transport: listens for inbound envelopes and delivers outbound ones.

    The connection owns the message store it was built with and closes it on
    shutdown.
    """

    def __init__(self, params, store, user_id, network=None, promiscuous=False):
        self.params = params
        self.store = store
        self.user_id = user_id
        self.network = network or NetworkConfig(address=params.address, port=params.port, discovery=False)
        self.promiscuous = promiscuous
        self.server = None
        self.zeroconf = None
        self.broadcast = None
        self.discovery = None
        self._handler = None

    def skip_certificate_validation(self):
        self.promiscuous = True
        logger.warning("Promiscuous mode: TLS certificates of peers will NOT be validated")

    def server_ssl_context(self):
        if not self.network.tls:
            return None
        ctx = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
        ctx.load_cert_chain(self.network.certfile, self.network.keyfile)
        return ctx

    def client_ssl_context(self):
        if not self.network.tls:
            return None
        ctx = ssl.create_default_context()
        if self.promiscuous:
            ctx.check_hostname = False
            ctx.verify_mode = ssl.CERT_NONE
        return ctx

    @property
    def bound_port(self):
        if self.server is None or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self, handler):
        """Listen for peers; ``handler`` is awaited with each inbound envelope."""
        self._handler = handler
        self.server = await asyncio.start_server(
            self._handle_peer,
            host=self.params.address,
            port=self.params.port,
            ssl=self.server_ssl_context(),
            limit=MAX_LINE,
        )
        logger.info(f"Listening for peers on {self.params.address}:{self.bound_port}")

        if self.network.discovery:
            self.zeroconf = AsyncZeroconf()
            instance = hashlib.sha256(self.user_id.encode("utf-8")).hexdigest()[:16]
            self.broadcast = Broadcast(
                self.zeroconf, instance, self.user_id, self.bound_port,
                address=self.params.address, external_address=self.params.external_address,
            )
            self.discovery = Discovery(self.zeroconf)
            await self.broadcast.start_service()
            await self.discovery.start_service()
            logger.debug(f"Announcing {self.user_id} on the local network")

    async def _handle_peer(self, reader, writer):
        addr = writer.get_extra_info("peername")
        try:
            msg = await recv_json(reader)
            logger.debug(f"Received {msg.get('type')} from {addr}")
            if msg.get("type") != "DELIVER":
                await send_json(writer, {"type": "REJECTED", "error": f"Unsupported message type: {msg.get('type')}"})
                return
            key = await self._handler(msg.get("envelope"))
            await send_json(writer, {"type": "DELIVERED", "key": key})
        except MurmurError as e:
            logger.warning(f"Rejected envelope from {addr}: {e}")
            await send_json(writer, {"type": "REJECTED", "error": str(e)})
        except (ConnectionError, ValueError, AttributeError) as e:
            logger.error(f"Exception handling peer {addr}: {e}")
        finally:
            writer.close()
            try:
                await writer.wait_closed()
            except ConnectionError:
                pass

    def resolve(self, recipient):
        """Return (host, port) for a user id like ``alice@example.org[:port]``."""
        if self.discovery is not None:
            found = self.discovery.lookup(recipient)
            if found:
                return found

        _, sep, location = recipient.rpartition("@")
        if not sep or not location:
            raise TransportError(f"Cannot resolve recipient '{recipient}'")
        host, sep, port = location.partition(":")
        if not sep:
            return host, self.params.port
        try:
            return host, int(port)
        except ValueError:
            raise TransportError(f"Bad port in recipient '{recipient}'")

    async def deliver(self, recipient, envelope):
        host, port = self.resolve(recipient)
        ctx = self.client_ssl_context()
        kwargs = {"ssl": ctx, "server_hostname": host} if ctx is not None else {}
        try:
            reader, writer = await asyncio.open_connection(host, port, limit=MAX_LINE, **kwargs)
        except OSError as e:
            raise TransportError(f"Could not connect to {recipient} at {host}:{port}: {e}") from e

        try:
            await send_json(writer, {"type": "DELIVER", "envelope": envelope})
            response = await recv_json(reader)
        except (ConnectionError, ValueError) as e:
            raise TransportError(f"Delivery to {recipient} failed: {e}") from e
        finally:
            writer.close()

        if response.get("type") != "DELIVERED":
            raise TransportError(f"{recipient} rejected the message: {response.get('error')}")
        return response

    async def close(self):
        if self.discovery is not None:
            await self.discovery.stop()
        if self.broadcast is not None:
            await self.broadcast.stop_service()
        if self.zeroconf is not None:
            await self.zeroconf.async_close()
        if self.server is not None:
            self.server.close()
            await self.server.wait_closed()
            self.server = None
        self.store.close()
