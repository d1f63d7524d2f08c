"""Mock PulsePoint feed data for local development and testing.

Incidents, units and addresses are fictional.  ``encrypt_feed`` produces a
payload in the same ``{"ct", "iv", "s"}`` shape the live feed returns, so
demo runs and tests go through the real decryption path.
"""

from __future__ import annotations

import base64
import json
import os
from typing import Optional

from Crypto.Cipher import AES
from Crypto.Util.Padding import pad

from relay.transformers.decryptor import build_passphrase, derive_key

# ---------------------------------------------------------------------------
# Plaintext feed
# ---------------------------------------------------------------------------

MOCK_ACTIVE_INCIDENTS = [
    {
        "ID": "1881234501",
        "CallReceivedDateTime": "2024-03-02T18:04:11Z",
        "PulsePointIncidentCallType": "ME",
        "FullDisplayAddress": "1200 W GEORGIA ST, VANCOUVER, BC",
        "Unit": [
            {"UnitID": "M12", "PulsePointDispatchStatus": "ER"},
            {"UnitID": "E7", "PulsePointDispatchStatus": "OS"},
        ],
    },
    {
        "ID": "1881234502",
        "CallReceivedDateTime": "2024-03-02T18:09:40Z",
        "PulsePointIncidentCallType": "TC",
        "FullDisplayAddress": "KINGSWAY & ROYAL OAK AVE, BURNABY, BC",
        "Unit": [
            {"UnitID": "M31", "PulsePointDispatchStatus": "DP"},
            {"UnitID": "R2", "PulsePointDispatchStatus": "ZZ"},
        ],
    },
    {
        "ID": "1881234503",
        "CallReceivedDateTime": "2024-03-02T18:11:02Z",
        "PulsePointIncidentCallType": "STBY",
        "FullDisplayAddress": "ROYAL COLUMBIAN HOSPITAL, NEW WESTMINSTER, BC",
        "Unit": [{"UnitID": "M44", "PulsePointDispatchStatus": "AK"}],
    },
    {
        # Outside the service area; filtered out
        "ID": "1881234504",
        "CallReceivedDateTime": "2024-03-02T18:12:55Z",
        "PulsePointIncidentCallType": "ME",
        "FullDisplayAddress": "100 MAIN ST, KAMLOOPS, BC",
        "Unit": [{"UnitID": "M90", "PulsePointDispatchStatus": "ER"}],
    },
]

MOCK_RECENT_INCIDENTS = [
    {
        "ID": "1881234490",
        "CallReceivedDateTime": "2024-03-02T16:40:00Z",
        "PulsePointIncidentCallType": "HMR",
        "FullDisplayAddress": "8000 RIVER RD, RICHMOND, BC",
        "Unit": [{"UnitID": "HZ1", "PulsePointDispatchStatus": "AR"}],
    },
]

MOCK_FEED: dict = {
    "incidents": {
        "active": MOCK_ACTIVE_INCIDENTS,
        "recent": MOCK_RECENT_INCIDENTS,
    }
}


# ---------------------------------------------------------------------------
# Encryption (inverse of relay.transformers.decryptor)
# ---------------------------------------------------------------------------


def wrap_plaintext(feed_json: str) -> str:
    """Wrap feed JSON in the escaped string literal the feed decrypts to."""
    return '"' + feed_json.replace('"', '\\"') + '"'


def encrypt_feed(
    feed: dict,
    salt: Optional[bytes] = None,
    iv: Optional[bytes] = None,
    passphrase: Optional[str] = None,
) -> dict:
    """Encrypt *feed* into a ``{"ct", "iv", "s"}`` payload."""
    salt = salt if salt is not None else os.urandom(8)
    iv = iv if iv is not None else os.urandom(16)
    key = derive_key((passphrase or build_passphrase()).encode("utf-8"), salt)

    plaintext = wrap_plaintext(json.dumps(feed)).encode("utf-8")
    ciphertext = AES.new(key, AES.MODE_CBC, iv).encrypt(pad(plaintext, AES.block_size))
    return {
        "ct": base64.b64encode(ciphertext).decode("ascii"),
        "iv": iv.hex(),
        "s": salt.hex(),
    }


def get_mock_payload(feed: Optional[dict] = None) -> dict:
    """Encrypted payload for *feed* (defaults to ``MOCK_FEED``)."""
    return encrypt_feed(feed if feed is not None else MOCK_FEED)


def discord_message_response(message_id: str = "1214000000000000001") -> dict:
    """Body Discord returns for ``POST <webhook>?wait=true``."""
    return {
        "id": message_id,
        "type": 0,
        "channel_id": "1213999999999999999",
        "webhook_id": "1213999999999999998",
        "embeds": [],
    }
