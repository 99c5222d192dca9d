"""
NoiseMonitor — FHE Coprocessor (mock mode)
===========================================
The AVM cannot evaluate homomorphic circuits, so the contract only executes
them symbolically: each operation is written to an "fhe_" box keyed by the
handle it produced. This module is the off-chain half of that split.

Responsibilities:
  1. Input verification — opens ciphertexts sealed to the network key, checks
     the 16-bit domain, assigns handles and signs the ed25519 input proof that
     submit_noise() verifies on-chain.
  2. Evaluation — resolves any handle by walking the on-chain operation log;
     input handles are opened from the sealed ciphertext the contract stores
     in its "inp_" box, so no evaluation state lives in this process.
  3. User decryption — releases a plaintext only when the on-chain ACL grants
     both the requesting user and the contract application address, and the
     request carries a valid, unexpired wallet-signed grant. The plaintext is
     sealed to the grant's ephemeral public key, never returned in the clear.

This is the local equivalent of an FHE VM running in mock mode: values are
sealed with PyNaCl rather than a lattice scheme, but the handle, proof and ACL
contracts are identical. Key management is the platform's concern.
"""

import base64
import json
import logging
import os
import time
from typing import Callable, Optional

import algosdk
from algosdk import mnemonic as mn
from nacl.exceptions import CryptoError
from nacl.public import PrivateKey, PublicKey, SealedBox
from nacl.signing import SigningKey
from pydantic import BaseModel

from errors import InvalidInput, PlatformError, Unauthorized

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# Opcodes and types, must match smart_contracts/noise_monitor/contract.py
# ─────────────────────────────────────────────────────────────────────────────

OP_INPUT = 0
OP_TRIVIAL = 1
OP_GT = 2
OP_SELECT = 3
OP_ADD = 4

TYPE_EBOOL = 0
TYPE_EUINT16 = 1

UINT16_MODULUS = 1 << 16
HANDLE_SIZE = 32
INPUT_PROOF_DOMAIN = b"fhe-input"
MAX_GRANT_DAYS = 365
SECONDS_PER_DAY = 86_400


# ─────────────────────────────────────────────────────────────────────────────
# Models
# ─────────────────────────────────────────────────────────────────────────────

class FheOperation(BaseModel):
    """Decoded "fhe_" box: the symbolic operation that produced a handle."""

    opcode: int
    result_type: int
    operand_a: bytes
    operand_b: bytes
    operand_c: bytes
    scalar: int


class EncryptedInput(BaseModel):
    handles: list[bytes]
    ciphertexts: list[bytes]  # passed to submit_noise() alongside their handles
    input_proof: bytes


class DecryptionGrant(BaseModel):
    """
    Wallet-signed, time-bounded permission to decrypt through the coprocessor.

    Mirrors the UserDecryptRequestVerification message of FHEVM:
    the wallet signs its ephemeral public key, the application ids it wants to
    read from, and a validity window.
    """

    public_key: str  # hex, ephemeral Curve25519 key the results are sealed to
    user_address: str
    app_ids: list[int]
    start_timestamp: int
    duration_days: int
    signature: str  # base64, algosdk.util.sign_bytes output


def grant_message(public_key: str, app_ids: list[int], start_timestamp: int, duration_days: int) -> bytes:
    """Canonical bytes signed by the wallet for a DecryptionGrant."""
    payload = {
        "type": "UserDecryptRequestVerification",
        "publicKey": public_key,
        "appIds": sorted(app_ids),
        "startTimestamp": start_timestamp,
        "durationDays": duration_days,
    }
    return json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")


def input_proof_message(user_address: str, handles: list[bytes]) -> bytes:
    """Bytes signed by the input verifier; see NoiseMonitor._verify_input_proof."""
    return INPUT_PROOF_DOMAIN + algosdk.encoding.decode_address(user_address) + b"".join(handles)


# ─────────────────────────────────────────────────────────────────────────────
# Coprocessor
# ─────────────────────────────────────────────────────────────────────────────

OperationSource = Callable[[bytes], Optional[FheOperation]]
CiphertextSource = Callable[[bytes], Optional[bytes]]
AclCheck = Callable[[bytes, str], bool]


class Coprocessor:
    """
    Off-chain evaluator and key holder for one NoiseMonitor application.

    Args:
        network_key       : Curve25519 private key inputs are sealed to.
        verifier_key      : Algorand private key (base64) of the input verifier
                            account registered in NoiseMonitor.create().
        app_id            : Application id of the NoiseMonitor deployment.
        app_address       : Application address; must hold an ACL grant on a
                            handle for any user to decrypt it.
        operation_source  : Callable returning the on-chain FheOperation for a
                            handle, or None when no "fhe_" box exists.
        ciphertext_source : Callable returning the sealed input stored on-chain
                            for an OP_INPUT handle, or None when no "inp_" box exists.
        acl               : Callable answering NoiseMonitor.is_allowed(handle, address).
    """

    def __init__(
        self,
        network_key: PrivateKey,
        verifier_key: str,
        app_id: int,
        app_address: str,
        operation_source: OperationSource,
        ciphertext_source: CiphertextSource,
        acl: AclCheck,
    ):
        self._network_key = network_key
        self._signing_key = SigningKey(base64.b64decode(verifier_key)[:32])
        self.verifier_address = algosdk.account.address_from_private_key(verifier_key)
        self.app_id = app_id
        self.app_address = app_address
        self._operation_source = operation_source
        self._ciphertext_source = ciphertext_source
        self._acl = acl
        self._values: dict[bytes, int] = {}

    @classmethod
    def from_environment(
        cls,
        app_id: int,
        app_address: str,
        operation_source: OperationSource,
        ciphertext_source: CiphertextSource,
        acl: AclCheck,
    ) -> "Coprocessor":
        """
        Build a coprocessor from COPROCESSOR_NETWORK_KEY (hex) and
        INPUT_VERIFIER_MNEMONIC. Missing keys are generated, which is only
        useful for local development: inputs sealed to a previous key become
        undecryptable after a restart.
        """
        network_key_hex = os.getenv("COPROCESSOR_NETWORK_KEY", "")
        if network_key_hex:
            network_key = PrivateKey(bytes.fromhex(network_key_hex))
        else:
            logger.warning("COPROCESSOR_NETWORK_KEY not set, generating an ephemeral network key")
            network_key = PrivateKey.generate()

        verifier_mnemonic = os.getenv("INPUT_VERIFIER_MNEMONIC", "")
        if verifier_mnemonic:
            verifier_key = mn.to_private_key(verifier_mnemonic)
        else:
            logger.warning("INPUT_VERIFIER_MNEMONIC not set, generating an ephemeral verifier account")
            verifier_key, _ = algosdk.account.generate_account()

        return cls(network_key, verifier_key, app_id, app_address, operation_source, ciphertext_source, acl)

    @property
    def network_public_key(self) -> bytes:
        return bytes(self._network_key.public_key)

    # ─────────────────────────────────────────────────────────────────────
    # Input verification
    # ─────────────────────────────────────────────────────────────────────

    def verify_inputs(
        self,
        user_address: str,
        ciphertexts: list[bytes],
        upper_bounds: Optional[list[int]] = None,
    ) -> EncryptedInput:
        """
        Accept ciphertexts produced by EncryptedInputBuilder for one user.

        Each ciphertext is opened and range-checked and given a handle bound
        to the user; the handles are signed together as the input proof.
        Nothing is retained: the resident submits the ciphertexts on-chain.

        Args:
            upper_bounds: Optional inclusive maximum per ciphertext, for
                          domains narrower than 16 bits (decibels).

        Raises:
            PlatformError: malformed ciphertext or address.
            InvalidInput: a value above its upper bound.
        """
        if not algosdk.encoding.is_valid_address(user_address):
            raise PlatformError(f"Invalid user address: {user_address}")
        if not ciphertexts:
            raise PlatformError("No ciphertexts supplied")
        if upper_bounds is not None and len(upper_bounds) != len(ciphertexts):
            raise PlatformError("One upper bound is required per ciphertext")

        user_key = algosdk.encoding.decode_address(user_address)
        handles = []
        for position, ciphertext in enumerate(ciphertexts):
            value = self._open(ciphertext)
            if upper_bounds is not None and value > upper_bounds[position]:
                raise InvalidInput(f"Input {position} exceeds its maximum of {upper_bounds[position]}")
            handles.append(algosdk.encoding.checksum(b"input" + user_key + ciphertext))

        proof = self._signing_key.sign(input_proof_message(user_address, handles)).signature
        logger.info(f"Verified {len(handles)} encrypted inputs for {user_address}")
        return EncryptedInput(handles=handles, ciphertexts=list(ciphertexts), input_proof=proof)

    def _open(self, ciphertext: bytes) -> int:
        try:
            plaintext = SealedBox(self._network_key).decrypt(ciphertext)
        except CryptoError as e:
            raise PlatformError(f"Ciphertext cannot be opened with the network key: {e}") from e
        if len(plaintext) != 3 or plaintext[0] not in (TYPE_EBOOL, TYPE_EUINT16):
            raise PlatformError("Malformed ciphertext payload")
        value = int.from_bytes(plaintext[1:], "big")
        if plaintext[0] == TYPE_EBOOL and value > 1:
            raise PlatformError("Boolean ciphertext out of range")
        return value

    # ─────────────────────────────────────────────────────────────────────
    # Evaluation
    # ─────────────────────────────────────────────────────────────────────

    def evaluate(self, handle: bytes) -> int:
        """
        Compute the plaintext behind a handle from the on-chain operation log.

        Handles are immutable, so results are memoised.

        Raises:
            PlatformError: unknown handle, missing input ciphertext or opcode.
        """
        if handle in self._values:
            return self._values[handle]

        operation = self._operation_source(handle)
        if operation is None:
            raise PlatformError(f"Unknown ciphertext handle: {handle.hex()}")

        if operation.opcode == OP_INPUT:
            ciphertext = self._ciphertext_source(handle)
            if ciphertext is None:
                raise PlatformError(f"No input ciphertext stored for handle {handle.hex()}")
            value = self._open(ciphertext)
        elif operation.opcode == OP_TRIVIAL:
            value = operation.scalar % UINT16_MODULUS
        elif operation.opcode == OP_GT:
            value = int(self.evaluate(operation.operand_a) > operation.scalar)
        elif operation.opcode == OP_SELECT:
            # Arithmetic select: both arms are always evaluated.
            condition = self.evaluate(operation.operand_a)
            if_true = self.evaluate(operation.operand_b)
            if_false = self.evaluate(operation.operand_c)
            value = (condition * if_true + (1 - condition) * if_false) % UINT16_MODULUS
        elif operation.opcode == OP_ADD:
            value = (self.evaluate(operation.operand_a) + self.evaluate(operation.operand_b)) % UINT16_MODULUS
        else:
            raise PlatformError(f"Unsupported FHE opcode {operation.opcode}")

        self._values[handle] = value
        return value

    # ─────────────────────────────────────────────────────────────────────
    # User decryption
    # ─────────────────────────────────────────────────────────────────────

    def verify_grant(self, grant: DecryptionGrant, now: Optional[int] = None) -> None:
        """
        Raises:
            Unauthorized: bad signature, wrong application, or outside the
                          validity window.
        """
        now = int(time.time()) if now is None else now
        message = grant_message(grant.public_key, grant.app_ids, grant.start_timestamp, grant.duration_days)
        try:
            signed = algosdk.util.verify_bytes(message, grant.signature, grant.user_address)
        except (ValueError, TypeError) as e:
            raise Unauthorized(f"Malformed decryption grant: {e}") from e
        if not signed:
            raise Unauthorized("Decryption grant signature is invalid")
        if self.app_id not in grant.app_ids:
            raise Unauthorized(f"Decryption grant does not cover application {self.app_id}")
        if not 0 < grant.duration_days <= MAX_GRANT_DAYS:
            raise Unauthorized(f"Decryption grant duration must be 1–{MAX_GRANT_DAYS} days")
        expires_at = grant.start_timestamp + grant.duration_days * SECONDS_PER_DAY
        if not grant.start_timestamp <= now < expires_at:
            raise Unauthorized("Decryption grant is expired or not yet valid")

    def user_decrypt(
        self,
        handles: list[bytes],
        grant: DecryptionGrant,
        now: Optional[int] = None,
    ) -> dict[str, str]:
        """
        Decrypt handles for the grant's user.

        Returns:
            Mapping of handle hex → base64 SealedBox ciphertext of the 2-byte
            big-endian plaintext, readable only with the grant's private key.

        Raises:
            Unauthorized: invalid grant, or a handle the user (or the contract)
                          holds no ACL grant on.
            PlatformError: evaluation failure.
        """
        self.verify_grant(grant, now)
        try:
            recipient = SealedBox(PublicKey(bytes.fromhex(grant.public_key)))
        except (ValueError, TypeError) as e:
            raise Unauthorized(f"Malformed grant public key: {e}") from e

        results = {}
        for handle in handles:
            if not self._acl(handle, grant.user_address):
                raise Unauthorized(f"{grant.user_address} is not allowed to decrypt {handle.hex()}")
            if not self._acl(handle, self.app_address):
                raise Unauthorized(f"Contract holds no grant on {handle.hex()}")
            value = self.evaluate(handle)
            results[handle.hex()] = base64.b64encode(recipient.encrypt(value.to_bytes(2, "big"))).decode()

        logger.info(f"User decryption of {len(handles)} handles for {grant.user_address}")
        return results
