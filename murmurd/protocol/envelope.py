import base64
import binascii
import hashlib
import json
import time

from murmurd.crypto.identity import Identity
from murmurd.errors import TransportError

ENVELOPE_VERSION = 1
SIGNED_FIELDS = ("v", "from", "to", "message", "timestamp", "public_key")


def _canonical(envelope) -> bytes:
    body = {k: envelope[k] for k in SIGNED_FIELDS}
    return json.dumps(body, sort_keys=True, separators=(",", ":")).encode("utf-8")


def build_envelope(identity, to, message, timestamp=None):
    envelope = {
        "v": ENVELOPE_VERSION,
        "from": identity.user_id,
        "to": to,
        "message": message,
        "timestamp": int(timestamp if timestamp is not None else time.time() * 1000),
        "public_key": base64.b64encode(identity.get_public_key_bytes()).decode(),
    }
    envelope["signature"] = base64.b64encode(identity.sign(_canonical(envelope))).decode()
    return envelope


def envelope_key(envelope) -> str:
    """Location of an envelope in the store: sha256 over its signed form."""
    return hashlib.sha256(_canonical(envelope) + envelope["signature"].encode()).hexdigest()


def verify_envelope(envelope):
    if not isinstance(envelope, dict):
        raise TransportError("envelope must be an object")
    missing = [k for k in SIGNED_FIELDS + ("signature",) if k not in envelope]
    if missing:
        raise TransportError(f"envelope is missing {', '.join(missing)}")
    if envelope["v"] != ENVELOPE_VERSION:
        raise TransportError(f"unsupported envelope version {envelope['v']}")

    try:
        public_key = base64.b64decode(envelope["public_key"], validate=True)
        signature = base64.b64decode(envelope["signature"], validate=True)
    except (binascii.Error, TypeError) as e:
        raise TransportError(f"envelope is not base64 encoded: {e}") from e

    if not Identity.verify(signature, _canonical(envelope), public_key):
        raise TransportError(f"bad signature on envelope from {envelope['from']}")
    return envelope
