import asyncio
import itertools
import logging
import os
import stat

from murmurd.protocol.json_handler import MAX_LINE, decode_json, encode_json

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


def _error_text(exc):
    return str(exc) or exc.__class__.__name__


class _Client:
    def __init__(self, client_id, writer):
        self.client_id = client_id
        self.writer = writer
        self.lock = asyncio.Lock()

    async def send(self, obj):
        async with self.lock:
            self.writer.write(encode_json(obj))
            await self.writer.drain()


class IPCGateway:
    """Local command channel between client processes and the session.

    Each request line is answered by exactly one response carrying the
    request's ``ref``. Session messages are pushed to every connected client.
    """

    def __init__(self, session, socket_path):
        self.session = session
        self.socket_path = socket_path
        self.server = None
        self.clients = {}       # {client_id: _Client}
        self.pending = {}       # {client_id: set of request tasks in flight}
        self._ids = itertools.count(1)
        self._tasks = set()
        self.handlers = {
            "send": self._handle_send,
            "playback": self._handle_playback,
            "purge": self._handle_purge,
        }

    async def start(self):
        _remove_stale_socket(self.socket_path)
        self.server = await asyncio.start_unix_server(
            self._handle_client, path=self.socket_path, limit=MAX_LINE
        )
        os.chmod(self.socket_path, stat.S_IRUSR | stat.S_IWUSR)
        logger.info(f"IPC interface bound to {self.socket_path}")

    async def close(self):
        # In-flight requests are dropped, their responses are never written
        if self.server is not None:
            self.server.close()
            self.server = None
        for client in list(self.clients.values()):
            client.writer.close()
        for task in list(self._tasks):
            task.cancel()
        self.clients.clear()
        self.pending.clear()
        _remove_stale_socket(self.socket_path)
        logger.info("IPC interface closed")

    async def _handle_client(self, reader, writer):
        client = _Client(next(self._ids), writer)
        self.clients[client.client_id] = client
        inflight = self.pending[client.client_id] = set()
        logger.debug(f"IPC client {client.client_id} connected")
        try:
            while True:
                try:
                    line = await reader.readline()
                except ValueError:
                    logger.warning(f"IPC client {client.client_id} sent an oversized line")
                    break
                if not line:
                    break
                if not line.strip():
                    continue
                task = asyncio.ensure_future(self._serve(client, line))
                self._tasks.add(task)
                task.add_done_callback(self._tasks.discard)
                inflight.add(task)
                task.add_done_callback(inflight.discard)
            # A half-closed client still gets the responses it asked for
            if inflight:
                await asyncio.gather(*list(inflight), return_exceptions=True)
        except ConnectionError:
            pass
        finally:
            self.clients.pop(client.client_id, None)
            self.pending.pop(client.client_id, None)
            writer.close()
            logger.debug(f"IPC client {client.client_id} disconnected")

    async def _serve(self, client, line):
        try:
            request = decode_json(line)
        except ValueError as e:
            await self._reply(client, {"ref": None, "error": f"invalid request: {e}", "result": None})
            return

        response = await self.dispatch(request)
        await self._reply(client, response)

    async def _reply(self, client, response):
        try:
            await client.send(response)
        except ConnectionError as e:
            logger.debug(f"Could not answer IPC client {client.client_id}: {e}")

    async def dispatch(self, request):
        """Run one request against the session and build its response."""
        if not isinstance(request, dict):
            return {"ref": None, "error": "invalid request: expected an object", "result": None}

        ref = request.get("ref")
        command = request.get("type")
        handler = self.handlers.get(command) if isinstance(command, str) else None
        if handler is None:
            return {"ref": ref, "error": f"unknown command: {request.get('type')}", "result": None}

        body = request.get("body") or {}
        try:
            result = await handler(body)
        except Exception as e:
            logger.info(f"----> {request['type']} {ref} failed: {e}")
            return {"ref": ref, "error": _error_text(e), "result": None}
        logger.debug(f"----> {request['type']} {ref} succeeded")
        return {"ref": ref, "error": None, "result": result}

    async def _handle_send(self, body):
        if not isinstance(body, dict) or not isinstance(body.get("to"), str) or not isinstance(body.get("message"), str):
            raise ValueError("send requires string fields 'to' and 'message'")
        logger.info(f"Sending message to {body['to']}")
        return await self.session.send(body["to"], body["message"])

    async def _handle_playback(self, body):
        logger.info("Received playback command")
        return await self.session.playback()

    async def _handle_purge(self, body):
        logger.info("Received purge command")
        await self.session.purge()
        return None

    def broadcast(self, message):
        """Push a session message to every connected client."""
        logger.info(f"Received a message located at {message.get('key')}")
        push = dict(message, type="message")
        for client in list(self.clients.values()):
            task = asyncio.ensure_future(self._reply(client, push))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)


def _remove_stale_socket(path):
    try:
        if stat.S_ISSOCK(os.stat(path).st_mode):
            os.unlink(path)
    except FileNotFoundError:
        pass
