"""
Shared fixtures for the backend test suite.

FakeLedger stands in for the contract's "fhe_", "inp_" and "acl_" boxes so the
coprocessor can be exercised without an algod node. Its merge() replays the
same symbolic operations NoiseMonitor._merge() records on-chain, with the same
handle derivations; noise_monitor_coprocessor_test.py runs the real contract.
"""

from collections.abc import Iterator

import algosdk
import pytest
from nacl.public import PrivateKey

from coprocessor import (
    OP_ADD,
    OP_GT,
    OP_INPUT,
    OP_SELECT,
    OP_TRIVIAL,
    TYPE_EBOOL,
    TYPE_EUINT16,
    Coprocessor,
    FheOperation,
)

APP_ID = 1001
APP_ADDRESS = algosdk.logic.get_application_address(APP_ID)
NOISE_THRESHOLD = 70
NULL_HANDLE = bytes(32)


def itob(value: int) -> bytes:
    return value.to_bytes(8, "big")


class FakeLedger:
    def __init__(self):
        self.operations: dict[bytes, FheOperation] = {}
        self.ciphertexts: dict[bytes, bytes] = {}
        self.grants: set[tuple[bytes, str]] = set()
        self._nonce = 0

    # ── Box reads, as passed to Coprocessor ──

    def read(self, handle: bytes):
        return self.operations.get(handle)

    def read_ciphertext(self, handle: bytes):
        return self.ciphertexts.get(handle)

    def is_allowed(self, handle: bytes, address: str) -> bool:
        return (handle, address) in self.grants

    # ── Contract-side behaviour ──

    def allow(self, handle: bytes, *addresses: str) -> None:
        for address in addresses:
            self.grants.add((handle, address))

    def consume_input(self, handle: bytes, ciphertext: bytes) -> bytes:
        self.ciphertexts[handle] = ciphertext
        self.operations[handle] = FheOperation(
            opcode=OP_INPUT,
            result_type=TYPE_EUINT16,
            operand_a=NULL_HANDLE,
            operand_b=NULL_HANDLE,
            operand_c=NULL_HANDLE,
            scalar=0,
        )
        return handle

    def trivial(self, value: int) -> bytes:
        handle = algosdk.encoding.checksum(b"fhe-trivial" + itob(TYPE_EUINT16) + itob(value))
        self.operations.setdefault(
            handle,
            FheOperation(
                opcode=OP_TRIVIAL,
                result_type=TYPE_EUINT16,
                operand_a=NULL_HANDLE,
                operand_b=NULL_HANDLE,
                operand_c=NULL_HANDLE,
                scalar=value,
            ),
        )
        return handle

    def record(self, opcode, result_type, a=NULL_HANDLE, b=NULL_HANDLE, c=NULL_HANDLE, scalar=0) -> bytes:
        self._nonce += 1
        handle = algosdk.encoding.checksum(
            b"fhe-op" + itob(self._nonce) + itob(opcode) + a + b + c + itob(scalar)
        )
        self.operations[handle] = FheOperation(
            opcode=opcode, result_type=result_type, operand_a=a, operand_b=b, operand_c=c, scalar=scalar
        )
        return handle

    def merge(self, totals, decibel: bytes, duration: bytes) -> tuple[bytes, bytes]:
        """One aggregation step; totals is None for a fresh location."""
        exceeded_total, duration_total = totals or (self.trivial(0), self.trivial(0))
        exceeded = self.record(OP_GT, TYPE_EBOOL, a=decibel, scalar=NOISE_THRESHOLD)
        increment = self.record(OP_SELECT, TYPE_EUINT16, a=exceeded, b=self.trivial(1), c=self.trivial(0))
        return (
            self.record(OP_ADD, TYPE_EUINT16, a=exceeded_total, b=increment),
            self.record(OP_ADD, TYPE_EUINT16, a=duration_total, b=duration),
        )


@pytest.fixture()
def ledger() -> FakeLedger:
    return FakeLedger()


@pytest.fixture()
def verifier() -> tuple[str, str]:
    """Input verifier account as (private_key, address)."""
    return algosdk.account.generate_account()


@pytest.fixture()
def coprocessor(ledger: FakeLedger, verifier: tuple[str, str]) -> Coprocessor:
    return Coprocessor(
        PrivateKey.generate(), verifier[0], APP_ID, APP_ADDRESS, ledger.read, ledger.read_ciphertext, ledger.is_allowed
    )


@pytest.fixture()
def resident() -> tuple[str, str]:
    return algosdk.account.generate_account()


@pytest.fixture()
def manager() -> tuple[str, str]:
    return algosdk.account.generate_account()


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> Iterator[pytest.MonkeyPatch]:
    for name in (
        "ADMIN_API_KEY",
        "RESEND_API_KEY",
        "ALERT_EMAIL_TO",
        "ALERT_EMAIL_FROM",
        "ALGORAND_EXPLORER_TX_URL",
        "COPROCESSOR_NETWORK_KEY",
        "INPUT_VERIFIER_MNEMONIC",
    ):
        monkeypatch.delenv(name, raising=False)
    yield monkeypatch
