import hashlib
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey

from murmurd.errors import IdentityError


class Identity:
    def __init__(self, user_id, private_key, passphrase=""):
        self.user_id = user_id
        self.passphrase = passphrase
        self.private_key = private_key
        self.public_key = private_key.public_key()

    @classmethod
    def generate(cls, user_id, passphrase=""):
        try:
            private_key = Ed25519PrivateKey.generate()
        except Exception as e:
            raise IdentityError(f"Could not generate key pair for {user_id}: {e}") from e
        return cls(user_id, private_key, passphrase)

    @classmethod
    def load(cls, pubkey_path, privkey_path, user_id, passphrase=""):
        """Read both key files and build the identity handle.

        Raises IdentityError if either file is unreadable, the passphrase is
        wrong, or the public key does not belong to the private key.
        """
        try:
            with open(privkey_path, "rb") as f:
                private_pem = f.read()
            with open(pubkey_path, "rb") as f:
                public_pem = f.read()
        except OSError as e:
            raise IdentityError(f"Could not read key file: {e}") from e

        password = passphrase.encode("utf-8") if passphrase else None
        try:
            private_key = serialization.load_pem_private_key(private_pem, password=password)
            public_key = serialization.load_pem_public_key(public_pem)
        except (ValueError, TypeError) as e:
            raise IdentityError(f"Could not load key pair from {privkey_path}: {e}") from e

        if not isinstance(private_key, Ed25519PrivateKey):
            raise IdentityError(f"{privkey_path} does not hold an Ed25519 key")

        identity = cls(user_id, private_key, passphrase)
        if public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        ) != identity.get_public_key_bytes():
            raise IdentityError(f"{pubkey_path} does not match {privkey_path}")
        return identity

    def save(self, pubkey_path, privkey_path):
        if self.passphrase:
            encryption = serialization.BestAvailableEncryption(self.passphrase.encode("utf-8"))
        else:
            encryption = serialization.NoEncryption()

        fd = os.open(privkey_path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "wb") as f:
            f.write(self.private_key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=encryption
            ))
        with open(pubkey_path, "wb") as f:
            f.write(self.public_key.public_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PublicFormat.SubjectPublicKeyInfo
            ))

    def sign(self, message: bytes) -> bytes:
        return self.private_key.sign(message)

    @staticmethod
    def verify(signature: bytes, message: bytes, peer_pub_bytes: bytes) -> bool:
        try:
            peer_pub_key = Ed25519PublicKey.from_public_bytes(peer_pub_bytes)
            peer_pub_key.verify(signature, message)
            return True
        except (InvalidSignature, ValueError):
            return False

    def get_public_key_bytes(self):
        # Use raw encoding for consistency
        return self.public_key.public_bytes(
            encoding=serialization.Encoding.Raw,
            format=serialization.PublicFormat.Raw
        )

    def fingerprint(self):
        return hashlib.sha256(self.get_public_key_bytes()).hexdigest()
