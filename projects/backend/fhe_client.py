"""
NoiseMonitor — FHE client helpers
==================================
The resident-side half of the encryption protocol, shaped after the FHEVM
instance used by the web client:

    builder = EncryptedInputBuilder(network_public_key, resident_address)
    encrypted = builder.add16(75).add16(30).encrypt(coprocessor)
    # encrypted.handles, encrypted.ciphertexts, encrypted.input_proof → submit_noise()

and for reading results back:

    public_key, private_key = generate_keypair()
    grant = create_decryption_grant(wallet_key, public_key, [app_id])
    sealed = coprocessor.user_decrypt(handles, grant)
    values = open_user_decrypt_results(private_key, sealed)
"""

import base64
import time
from typing import Optional

import algosdk
from nacl.public import PrivateKey, PublicKey, SealedBox

from coprocessor import (
    TYPE_EBOOL,
    TYPE_EUINT16,
    UINT16_MODULUS,
    Coprocessor,
    DecryptionGrant,
    EncryptedInput,
    grant_message,
)


class EncryptedInputBuilder:
    """Collects values and seals each one to the coprocessor's network key."""

    def __init__(self, network_public_key: bytes, user_address: str):
        self._box = SealedBox(PublicKey(network_public_key))
        self.user_address = user_address
        self._ciphertexts: list[bytes] = []

    def add16(self, value: int) -> "EncryptedInputBuilder":
        if not 0 <= value < UINT16_MODULUS:
            raise ValueError(f"{value} does not fit in an encrypted uint16")
        self._ciphertexts.append(self._box.encrypt(bytes([TYPE_EUINT16]) + value.to_bytes(2, "big")))
        return self

    def add_bool(self, value: bool) -> "EncryptedInputBuilder":
        self._ciphertexts.append(self._box.encrypt(bytes([TYPE_EBOOL]) + int(value).to_bytes(2, "big")))
        return self

    def ciphertexts(self) -> list[bytes]:
        return list(self._ciphertexts)

    def encrypt(self, coprocessor: Coprocessor) -> EncryptedInput:
        """Hand the ciphertexts to the coprocessor for handles and an input proof."""
        return coprocessor.verify_inputs(self.user_address, self.ciphertexts())


def generate_keypair() -> tuple[str, str]:
    """Ephemeral keypair for user decryption, as (public_hex, private_hex)."""
    key = PrivateKey.generate()
    return bytes(key.public_key).hex(), bytes(key).hex()


def create_decryption_grant(
    wallet_private_key: str,
    public_key: str,
    app_ids: list[int],
    start_timestamp: Optional[int] = None,
    duration_days: int = 1,
) -> DecryptionGrant:
    """
    Sign a decryption grant with the resident's (or manager's) wallet key.

    Args:
        wallet_private_key : base64 Algorand private key of the requesting account.
        public_key         : hex public key from generate_keypair().
        app_ids            : NoiseMonitor application ids the grant covers.
        start_timestamp    : Start of the validity window, defaults to now.
        duration_days      : Validity window length in days.
    """
    start_timestamp = int(time.time()) if start_timestamp is None else start_timestamp
    message = grant_message(public_key, app_ids, start_timestamp, duration_days)
    return DecryptionGrant(
        public_key=public_key,
        user_address=algosdk.account.address_from_private_key(wallet_private_key),
        app_ids=app_ids,
        start_timestamp=start_timestamp,
        duration_days=duration_days,
        signature=algosdk.util.sign_bytes(message, wallet_private_key),
    )


def open_user_decrypt_results(private_key: str, results: dict[str, str]) -> dict[str, int]:
    """Open the sealed results of Coprocessor.user_decrypt() with the ephemeral key."""
    box = SealedBox(PrivateKey(bytes.fromhex(private_key)))
    return {
        handle: int.from_bytes(box.decrypt(base64.b64decode(sealed)), "big")
        for handle, sealed in results.items()
    }
