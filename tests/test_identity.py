import os
import shutil
import stat
import tempfile
import unittest

from murmurd.crypto.identity import Identity
from murmurd.errors import IdentityError


class IdentityTests(unittest.TestCase):
    def setUp(self):
        self.dir = tempfile.mkdtemp()
        self.addCleanup(shutil.rmtree, self.dir)
        self.pub = os.path.join(self.dir, "id.pub")
        self.priv = os.path.join(self.dir, "id")

    def test_save_then_load_with_passphrase(self):
        identity = Identity.generate("alice@example.org", "secret")
        identity.save(self.pub, self.priv)

        loaded = Identity.load(self.pub, self.priv, "alice@example.org", "secret")

        self.assertEqual(loaded.get_public_key_bytes(), identity.get_public_key_bytes())
        self.assertEqual(loaded.fingerprint(), identity.fingerprint())
        with open(self.priv, "rb") as f:
            self.assertIn(b"ENCRYPTED", f.read())

    def test_private_key_file_is_owner_only(self):
        Identity.generate("alice@example.org").save(self.pub, self.priv)
        self.assertEqual(stat.S_IMODE(os.stat(self.priv).st_mode), 0o600)

    def test_wrong_passphrase(self):
        Identity.generate("alice@example.org", "secret").save(self.pub, self.priv)
        with self.assertRaises(IdentityError):
            Identity.load(self.pub, self.priv, "alice@example.org", "wrong")

    def test_missing_file(self):
        Identity.generate("alice@example.org").save(self.pub, self.priv)
        os.remove(self.pub)
        with self.assertRaisesRegex(IdentityError, "Could not read"):
            Identity.load(self.pub, self.priv, "alice@example.org")

    def test_mismatched_public_key(self):
        Identity.generate("alice@example.org").save(self.pub, self.priv)
        other = os.path.join(self.dir, "other")
        Identity.generate("mallory@example.org").save(self.pub, other)
        with self.assertRaisesRegex(IdentityError, "does not match"):
            Identity.load(self.pub, self.priv, "alice@example.org")

    def test_sign_and_verify(self):
        identity = Identity.generate("alice@example.org")
        signature = identity.sign(b"hello")

        self.assertTrue(Identity.verify(signature, b"hello", identity.get_public_key_bytes()))
        self.assertFalse(Identity.verify(signature, b"hullo", identity.get_public_key_bytes()))
        self.assertFalse(Identity.verify(signature, b"hello", b"short"))
