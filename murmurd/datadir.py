import asyncio
import logging
import os
from dataclasses import dataclass
from typing import Dict, Optional

from murmurd.config import DEFAULT_CONFIG, Configuration, load_config
from murmurd.crypto.identity import Identity
from murmurd.errors import ConfigError

logger = logging.getLogger(__name__)
logger.setLevel(logging.DEBUG)
if not logger.hasHandlers():
    ch = logging.StreamHandler()
    ch.setLevel(logging.DEBUG)
    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')
    ch.setFormatter(formatter)
    logger.addHandler(ch)

DEFAULT_DATADIR = os.path.join(os.path.expanduser("~"), ".murmurd")

DEFAULT_NAMES = {
    "pubkey": "id_ed25519.pub",
    "privkey": "id_ed25519",
    "store": "murmurd.db",
    "config": "murmurd.yaml",
}


@dataclass(frozen=True)
class DataDirectoryResult:
    """Either ``first_run`` is set, or ``config`` holds the loaded configuration."""

    first_run: bool = False
    config: Optional[Configuration] = None


class DataDirectory:
    def __init__(self, root=None, names: Optional[Dict[str, str]] = None):
        self.root = root or os.environ.get("MURMURD_DATADIR") or DEFAULT_DATADIR
        self.names = dict(DEFAULT_NAMES)
        if names:
            self.names.update(names)

    def path(self, name=None):
        if name is None:
            return self.root
        return os.path.join(self.root, self.names[name])

    async def ensure(self) -> DataDirectoryResult:
        if not os.path.isdir(self.root):
            logger.info(f"Data directory {self.root} does not exist, creating it")
            os.makedirs(self.root, exist_ok=True)

        config_path = self.path("config")
        if not os.path.exists(config_path):
            with open(config_path, "w", encoding="utf-8") as f:
                f.write(DEFAULT_CONFIG)
            logger.info(f"Default config written to {config_path}")
            print(f"The default config has been written to {config_path}")
            print("Edit `identity.user_id` and `identity.passphrase`, then run murmurd again.")
            return DataDirectoryResult(first_run=True)

        try:
            config = load_config(config_path)
        except ConfigError as e:
            logger.error(f"Could not parse config file {config_path}: {e}")
            raise
        logger.debug(f"Loaded config file from {config_path}")

        if not os.path.exists(self.path("privkey")):
            logger.info("No identity found in data directory, generating one")
            identity = await asyncio.to_thread(
                Identity.generate,
                config.identity.user_id,
                config.identity.passphrase,
            )
            identity.save(self.path("pubkey"), self.path("privkey"))
            logger.info(f"Identity {identity.fingerprint()[:16]} written to {self.root}")

        return DataDirectoryResult(config=config)
