import asyncio
import enum
import logging
import signal
import traceback
from dataclasses import dataclass
from typing import Optional

from murmurd.crypto.identity import Identity
from murmurd.datadir import DataDirectory
from murmurd.errors import MurmurError
from murmurd.network.bootstrap import NetworkBootstrapper
from murmurd.protocol.ipc import IPCGateway
from murmurd.session.session import Session

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)


class StartupState(enum.Enum):
    PENDING = "pending"
    NEEDS_FIRST_RUN_SETUP = "needs_first_run_setup"
    FAILED = "failed"
    READY = "ready"


@dataclass(frozen=True)
class StartResult:
    state: StartupState
    reason: Optional[str] = None


class _Halt(Exception):
    """Stops the pipeline without it being a failure."""


class Daemon:
    """Runs the startup pipeline and owns the process lifecycle.

    Stages run strictly in order and the first failing stage stops the rest.
    Side effects of finished stages (created directory, generated keys) are
    left in place for the next run.
    """

    def __init__(self, datadir=None, names=None, mapper=None, connection_factory=None, socket_path=None):
        self.datadir = datadir if isinstance(datadir, DataDirectory) else DataDirectory(datadir, names)
        self.mapper = mapper
        self.connection_factory = connection_factory
        self.socket_path = socket_path
        self.state = StartupState.PENDING
        self.config = None
        self.identity = None
        self.connection = None
        self.session = None
        self.gateway = None
        self.bootstrapper = None
        self._stop = None

    def stages(self):
        return [
            self._setup_data_directory,
            self._prepare_identity,
            self._connect_to_network,
            self._create_session,
            self._bind_ipc_interface,
        ]

    async def start(self) -> StartResult:
        for stage in self.stages():
            try:
                await stage()
            except _Halt:
                self.state = StartupState.NEEDS_FIRST_RUN_SETUP
                return StartResult(self.state)
            except (MurmurError, OSError) as e:
                logger.error(f"Startup failed in {stage.__name__}: {e}")
                self.state = StartupState.FAILED
                return StartResult(self.state, reason=str(e) or e.__class__.__name__)
        self.state = StartupState.READY
        logger.info("----> Ready!")
        return StartResult(self.state)

    async def _setup_data_directory(self):
        result = await self.datadir.ensure()
        if result.first_run:
            raise _Halt()
        self.config = result.config

    async def _prepare_identity(self):
        logger.info("Loading identity...")
        self.identity = Identity.load(
            self.datadir.path("pubkey"),
            self.datadir.path("privkey"),
            self.config.identity.user_id,
            self.config.identity.passphrase,
        )
        logger.info(f"----> Loaded {self.identity.user_id} ({self.identity.fingerprint()[:16]})")

    async def _connect_to_network(self):
        kwargs = {}
        if self.connection_factory is not None:
            kwargs["connection_factory"] = self.connection_factory
        self.bootstrapper = NetworkBootstrapper(self.config, self.datadir.path("store"), mapper=self.mapper, **kwargs)
        self.connection = await self.bootstrapper.connect()

    async def _create_session(self):
        logger.info("Preparing session...")
        if self.config.promiscuous and self.connection is not None:
            self.connection.skip_certificate_validation()

        self.session = Session(self.identity, self.connection)
        self.session.on("ready", lambda: logger.info("----> Session ready"))
        self.session.on("error", self._on_session_error)
        await self.session.open()

    def _on_session_error(self, err):
        logger.error(f"Session error: {err}")

    async def _bind_ipc_interface(self):
        self.gateway = IPCGateway(self.session, self.socket_path or self.config.ipc.socket)
        await self.gateway.start()
        self.session.on("message", self.gateway.broadcast)

    async def stop(self):
        if self.gateway is not None:
            await self.gateway.close()
            self.gateway = None
        if self.session is not None:
            await self.session.close()
            self.session = None
        elif self.connection is not None:
            await self.connection.close()
        self.connection = None
        if self.bootstrapper is not None and self.bootstrapper.mapping is not None:
            self.bootstrapper.mapping = None
            await asyncio.to_thread(self.bootstrapper.mapper.unmap_port, self.config.network.port)

    def request_stop(self):
        if self._stop is not None:
            self._stop.set()

    async def run(self) -> int:
        """Start, then serve until SIGINT/SIGTERM. Returns the exit code."""
        result = await self.start()
        if result.state is StartupState.FAILED:
            print(f"murmurd: startup failed: {result.reason}")
            await self.stop()
            return 1
        if result.state is StartupState.NEEDS_FIRST_RUN_SETUP:
            return 0

        self._stop = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, self.request_stop)
        try:
            await self._stop.wait()
        finally:
            for sig in (signal.SIGINT, signal.SIGTERM):
                loop.remove_signal_handler(sig)
            logger.info("Shutting down")
            try:
                await self.stop()
            except Exception:
                logger.error(f"Error during shutdown:\n{traceback.format_exc()}")
        return 0
