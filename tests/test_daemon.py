import contextlib
import io
import os
import shutil
import tempfile
import unittest

from murmurd.client import request
from murmurd.daemon import Daemon, StartupState
from murmurd.datadir import DataDirectory
from murmurd.errors import TransportError


class RecordingMapper:
    """UPnP stand-in that fails, noting whether the key existed when it was asked."""

    def __init__(self, datadir):
        self.datadir = datadir
        self.key_existed = None

    def map_port(self, port):
        self.key_existed = os.path.exists(self.datadir.path("privkey"))
        raise TransportError("No UPnP devices found")

    def external_ip(self):
        raise AssertionError("not reached")


class MappingMapper:
    def __init__(self):
        self.unmapped = []

    def map_port(self, port):
        pass

    def external_ip(self):
        return "203.0.113.7"

    def unmap_port(self, port):
        self.unmapped.append(port)


class DaemonTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp(prefix="murmur")
        self.addCleanup(shutil.rmtree, self.dir)
        self.socket_path = os.path.join(self.dir, "svc.sock")
        self.datadir = DataDirectory(os.path.join(self.dir, "data"))
        self.mapper = RecordingMapper(self.datadir)
        self.daemons = []

    async def asyncTearDown(self):
        for daemon in self.daemons:
            await daemon.stop()

    def daemon(self, mapper=None):
        daemon = Daemon(datadir=self.datadir, mapper=mapper or self.mapper, socket_path=self.socket_path)
        self.daemons.append(daemon)
        return daemon

    def write_config(self, extra=""):
        os.makedirs(self.datadir.path(), exist_ok=True)
        with open(self.datadir.path("config"), "w") as f:
            f.write(
                "identity: {user_id: alice@127.0.0.1, passphrase: secret}\n"
                "network: {address: 127.0.0.1, port: 0, portmap: true, discovery: false}\n"
                + extra
            )

    async def first_run(self):
        with contextlib.redirect_stdout(io.StringIO()):
            return await self.daemon().start()

    async def test_first_run_stops_after_writing_config(self):
        result = await self.first_run()

        self.assertEqual(result.state, StartupState.NEEDS_FIRST_RUN_SETUP)
        self.assertTrue(os.path.exists(self.datadir.path("config")))
        self.assertFalse(os.path.exists(self.datadir.path("privkey")))
        self.assertIsNone(self.mapper.key_existed)
        self.assertFalse(os.path.exists(self.socket_path))

    async def test_second_run_reaches_ipc_despite_upnp_failure(self):
        await self.first_run()
        self.write_config()

        daemon = self.daemon()
        result = await daemon.start()

        self.assertEqual(result.state, StartupState.READY)
        self.assertTrue(self.mapper.key_existed)
        self.assertTrue(os.path.exists(self.datadir.path("pubkey")))
        self.assertTrue(daemon.connection.params.degraded)
        self.assertTrue(os.path.exists(self.socket_path))

        response = await request(self.socket_path, "playback", timeout=5)
        self.assertIsNone(response["error"])
        self.assertEqual(response["result"], [])

    async def test_passive_mode_runs_offline(self):
        self.write_config("passive: true\n")

        daemon = self.daemon()
        result = await daemon.start()

        self.assertEqual(result.state, StartupState.READY)
        self.assertIsNone(daemon.connection)
        self.assertIsNone(self.mapper.key_existed)
        self.assertFalse(os.path.exists(self.datadir.path("store")))

        response = await request(self.socket_path, "send", {"to": "bob@example.org", "message": "hi"}, timeout=5)
        self.assertIn("offline", response["error"])
        self.assertIsNone(response["result"])

    async def test_unparseable_config_fails_before_ipc(self):
        os.makedirs(self.datadir.path())
        with open(self.datadir.path("config"), "w") as f:
            f.write("identity: [broken")

        result = await self.daemon().start()

        self.assertEqual(result.state, StartupState.FAILED)
        self.assertIn("YAML", result.reason)
        self.assertFalse(os.path.exists(self.socket_path))

    async def test_unreadable_identity_fails_before_network(self):
        self.write_config()
        with open(self.datadir.path("privkey"), "w") as f:
            f.write("not a key")

        daemon = self.daemon()
        result = await daemon.start()

        self.assertEqual(result.state, StartupState.FAILED)
        self.assertIsNone(self.mapper.key_existed)
        self.assertIsNone(daemon.connection)
        self.assertFalse(os.path.exists(self.socket_path))

    async def test_promiscuous_reaches_transport(self):
        self.write_config("promiscuous: true\n")

        daemon = self.daemon()
        await daemon.start()

        self.assertTrue(daemon.connection.promiscuous)

    async def test_run_exit_codes(self):
        with contextlib.redirect_stdout(io.StringIO()):
            self.assertEqual(await self.daemon().run(), 0)

        with open(self.datadir.path("config"), "w") as f:
            f.write("identity: {user_id: ''}")
        with contextlib.redirect_stdout(io.StringIO()) as out:
            self.assertEqual(await self.daemon().run(), 1)
        self.assertIn("startup failed", out.getvalue())

    async def test_undecodable_config_fails_before_ipc(self):
        os.makedirs(self.datadir.path())
        with open(self.datadir.path("config"), "wb") as f:
            f.write(b"\xff\xfe")

        daemon = self.daemon()
        result = await daemon.start()

        self.assertEqual(result.state, StartupState.FAILED)
        self.assertEqual(daemon.state, StartupState.FAILED)
        self.assertIn("UTF-8", result.reason)
        self.assertFalse(os.path.exists(self.socket_path))

    async def test_unopenable_store_fails_startup(self):
        self.write_config()
        os.makedirs(self.datadir.path("store"))

        daemon = self.daemon()
        result = await daemon.start()

        self.assertEqual(result.state, StartupState.FAILED)
        self.assertIn("message store", result.reason)
        self.assertIsNone(daemon.connection)
        self.assertFalse(os.path.exists(self.socket_path))

        with contextlib.redirect_stdout(io.StringIO()) as out:
            self.assertEqual(await self.daemon().run(), 1)
        self.assertIn("startup failed", out.getvalue())

    async def test_mapping_is_removed_when_connection_fails(self):
        self.write_config()
        os.makedirs(self.datadir.path("store"))
        mapper = MappingMapper()

        daemon = self.daemon(mapper)
        result = await daemon.start()
        self.assertEqual(result.state, StartupState.FAILED)

        await daemon.stop()
        self.assertEqual(mapper.unmapped, [0])
        await daemon.stop()
        self.assertEqual(mapper.unmapped, [0])

    async def test_mapping_is_removed_on_shutdown(self):
        self.write_config()
        mapper = MappingMapper()

        daemon = self.daemon(mapper)
        result = await daemon.start()
        self.assertEqual(result.state, StartupState.READY)
        self.assertEqual(daemon.connection.params.external_address, "203.0.113.7")

        await daemon.stop()
        self.assertEqual(mapper.unmapped, [0])
