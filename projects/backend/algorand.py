"""
NoiseMonitor — Algorand Blockchain Interaction Module
======================================================
Handles all smart contract calls using raw algosdk AtomicTransactionComposer.

Design: the backend holds the owner credentials (DEPLOYER_MNEMONIC) for the
administrative calls and relays resident-signed submissions. Read-only methods
are simulated, so they cost nothing and never change state.

ABI method signatures (derived from the NoiseMonitor contract definition):
  submit_noise(byte[32],byte[32],byte[],byte[],byte[],uint64,uint64,bool)void
  get_user_record_count(address)uint64
  get_user_record(address,uint64)(uint64,uint64,address)
  get_user_record_decibel(address,uint64)byte[32]
  get_user_record_duration(address,uint64)byte[32]
  get_location_summary(uint64)(uint64,uint64,uint64)
  get_location_aggregated_data_public(uint64)(byte[32],byte[32])
  get_location_aggregated_data(uint64)(byte[32],byte[32])
  get_all_location_ids()uint64[]
  get_location_count()uint64
  allow_manager(address,uint64)void
  allow_manager_all_locations(address)void
  revoke_manager(address)void
  authorize_self_for_location(uint64)void
  is_allowed(byte[32],address)bool

FheOperation box ABI type: (uint8,uint8,byte[32],byte[32],byte[32],uint64)
  Index 0: opcode
  Index 1: result_type
  Index 2-4: operand handles
  Index 5: scalar

Box names read directly:
  "fhe_" + handle                        → FheOperation
  "inp_" + handle                        → sealed input ciphertext
  "acl_" + sha512_256(handle + account)  → ACL grant
"""

import base64
import logging
import os
from typing import Optional

import algosdk
from algosdk import abi, mnemonic as mn
from algosdk.atomic_transaction_composer import (
    AccountTransactionSigner,
    AtomicTransactionComposer,
)
from algosdk.error import AlgodHTTPError
from algosdk.v2client import algod
from algosdk.v2client.models import SimulateRequest

from coprocessor import FheOperation
from errors import classify_contract_error

logger = logging.getLogger(__name__)

# ─────────────────────────────────────────────────────────────────────────────
# ABI Method Definitions
# One definition per NoiseMonitor ABI method, built at import time
# ─────────────────────────────────────────────────────────────────────────────

HANDLE_TYPE = "byte[32]"
FHE_OPERATION_TYPE = abi.ABIType.from_string(f"(uint8,uint8,{HANDLE_TYPE},{HANDLE_TYPE},{HANDLE_TYPE},uint64)")

GET_USER_RECORD_COUNT_METHOD = abi.Method.from_signature("get_user_record_count(address)uint64")
GET_USER_RECORD_METHOD = abi.Method.from_signature("get_user_record(address,uint64)(uint64,uint64,address)")
GET_USER_RECORD_DECIBEL_METHOD = abi.Method.from_signature(f"get_user_record_decibel(address,uint64){HANDLE_TYPE}")
GET_USER_RECORD_DURATION_METHOD = abi.Method.from_signature(f"get_user_record_duration(address,uint64){HANDLE_TYPE}")
GET_LOCATION_SUMMARY_METHOD = abi.Method.from_signature("get_location_summary(uint64)(uint64,uint64,uint64)")
GET_AGGREGATED_PUBLIC_METHOD = abi.Method.from_signature(
    f"get_location_aggregated_data_public(uint64)({HANDLE_TYPE},{HANDLE_TYPE})"
)
GET_AGGREGATED_METHOD = abi.Method.from_signature(
    f"get_location_aggregated_data(uint64)({HANDLE_TYPE},{HANDLE_TYPE})"
)
GET_ALL_LOCATION_IDS_METHOD = abi.Method.from_signature("get_all_location_ids()uint64[]")
GET_LOCATION_COUNT_METHOD = abi.Method.from_signature("get_location_count()uint64")
ALLOW_MANAGER_METHOD = abi.Method.from_signature("allow_manager(address,uint64)void")
ALLOW_MANAGER_ALL_METHOD = abi.Method.from_signature("allow_manager_all_locations(address)void")
REVOKE_MANAGER_METHOD = abi.Method.from_signature("revoke_manager(address)void")

# ARC-28 events: name → (ABI tuple type, field names)
EVENT_DEFINITIONS = {
    "NoiseReportSubmitted": ("(address,uint64,uint64,uint64)", ["reporter", "location_id", "timestamp", "record_index"]),
    "NoiseAlert": ("(uint64,uint64,uint64)", ["location_id", "timestamp", "total_reports"]),
    "ManagerAuthorizationChanged": ("(address,bool)", ["manager", "authorized"]),
}

# An app call may reference at most 8 resources.
MAX_REFERENCES_PER_TXN = 8
# submit_noise() calls ensure_budget(4200): six op-up inner calls on top of the outer
# fee. Residents sign submit_noise() themselves, so the relay only advertises it.
SUBMIT_FEE_MULTIPLIER = 7
MIN_FEE = 1000


# ─────────────────────────────────────────────────────────────────────────────
# Client Initialization
# ─────────────────────────────────────────────────────────────────────────────


def get_algod_client() -> algod.AlgodClient:
    """Create and return an AlgodClient connected to the configured network."""
    server = os.getenv("ALGORAND_ALGOD_SERVER", "https://testnet-api.algonode.cloud")
    port = os.getenv("ALGORAND_ALGOD_PORT", "")
    token = os.getenv(
        "ALGORAND_ALGOD_TOKEN",
        "a" * 64,  # AlgoNode public endpoint uses empty or any token
    )
    url = f"{server}:{port}" if port else server
    return algod.AlgodClient(token, url)


def get_deployer_credentials() -> tuple[str, str]:
    """
    Load the owner's private key and address from environment.

    Raises:
        ValueError: If DEPLOYER_MNEMONIC is not set in environment.
    """
    mnemonic_phrase = os.getenv("DEPLOYER_MNEMONIC")
    if not mnemonic_phrase:
        raise ValueError(
            "DEPLOYER_MNEMONIC environment variable is not set. "
            "Run: algokit generate account and copy the mnemonic to .env"
        )
    private_key = mn.to_private_key(mnemonic_phrase)
    address = algosdk.account.address_from_private_key(private_key)
    return private_key, address


def get_app_id() -> int:
    """Load the deployed NoiseMonitor App ID from environment."""
    app_id = int(os.getenv("ALGORAND_APP_ID", "0"))
    if app_id == 0:
        raise ValueError("ALGORAND_APP_ID is not set. Deploy the NoiseMonitor contract first.")
    return app_id


def get_app_address(app_id: int) -> str:
    """Compute the deterministic contract escrow address from the App ID."""
    return algosdk.logic.get_application_address(app_id)


# ─────────────────────────────────────────────────────────────────────────────
# Call helpers
# ─────────────────────────────────────────────────────────────────────────────


def _compose(
    algod_client: algod.AlgodClient,
    method: abi.Method,
    method_args: list,
    private_key: str,
    boxes: Optional[list[tuple[int, bytes]]] = None,
) -> AtomicTransactionComposer:
    app_id = get_app_id()
    address = algosdk.account.address_from_private_key(private_key)
    signer = AccountTransactionSigner(private_key)

    boxes = boxes or []
    chunks = [boxes[i:i + MAX_REFERENCES_PER_TXN] for i in range(0, len(boxes), MAX_REFERENCES_PER_TXN)] or [[]]

    sp = algod_client.suggested_params()
    sp.flat_fee = True
    sp.fee = MIN_FEE

    atc = AtomicTransactionComposer()
    atc.add_method_call(
        app_id=app_id,
        method=method,
        sender=address,
        sp=sp,
        signer=signer,
        method_args=method_args,
        boxes=chunks[0],
    )
    # Extra box references ride on cheap get_location_count() calls;
    # references are shared across the whole group.
    for index, chunk in enumerate(chunks[1:], start=1):
        padding_sp = algod_client.suggested_params()
        padding_sp.flat_fee = True
        padding_sp.fee = MIN_FEE
        atc.add_method_call(
            app_id=app_id,
            method=GET_LOCATION_COUNT_METHOD,
            sender=address,
            sp=padding_sp,
            signer=signer,
            method_args=[],
            boxes=chunk,
            note=f"box-refs-{index}".encode(),
        )
    return atc


def _simulate_request() -> SimulateRequest:
    return SimulateRequest(txn_groups=[], allow_unnamed_resources=True)


def _discover_boxes(algod_client: algod.AlgodClient, atc: AtomicTransactionComposer) -> list[tuple[int, bytes]]:
    """
    Simulate with unnamed resources allowed and collect the boxes the call
    touches, so the real submission can reference them explicitly.
    """
    result = atc.simulate(algod_client, _simulate_request())
    group = result.simulate_response["txn-groups"][0]
    if group.get("failure-message"):
        raise classify_contract_error(RuntimeError(group["failure-message"]))

    boxes: list[tuple[int, bytes]] = []
    accessed = [group.get("unnamed-resources-accessed", {})]
    accessed += [txn.get("unnamed-resources-accessed", {}) for txn in group.get("txn-results", [])]
    for resources in accessed:
        for box in resources.get("boxes", []):
            ref = (int(box["app"]), base64.b64decode(box["name"]))
            if ref not in boxes:
                boxes.append(ref)
    return boxes


def _execute(method: abi.Method, method_args: list, private_key: str) -> dict:
    """Submit a state-changing call, returning tx_id, return value and events."""
    algod_client = get_algod_client()
    try:
        draft = _compose(algod_client, method, method_args, private_key)
        boxes = _discover_boxes(algod_client, draft)
        atc = _compose(algod_client, method, method_args, private_key, boxes)
        result = atc.execute(algod_client, wait_rounds=4)
    except Exception as e:
        raise classify_contract_error(e) from e

    tx_id = result.tx_ids[0]
    abi_result = result.abi_results[0]
    logs = [base64.b64decode(entry) for entry in abi_result.tx_info.get("logs", [])]
    return {
        "tx_id": tx_id,
        "return_value": abi_result.return_value,
        "events": decode_events(logs),
    }


def _read(method: abi.Method, method_args: list):
    """
    Simulate a read-only call as the owner account — no fees, no state change.

    The owner passes the gated accessor, so one sender serves every read.
    """
    algod_client = get_algod_client()
    private_key, _ = get_deployer_credentials()
    try:
        atc = _compose(algod_client, method, method_args, private_key)
        simulate_result = atc.simulate(algod_client, _simulate_request())
        group = simulate_result.simulate_response["txn-groups"][0]
        if group.get("failure-message"):
            raise RuntimeError(group["failure-message"])
        return simulate_result.abi_results[0].return_value
    except Exception as e:
        raise classify_contract_error(e) from e


# ─────────────────────────────────────────────────────────────────────────────
# Blockchain Operations: resident relay
# ─────────────────────────────────────────────────────────────────────────────


def relay_signed_group(signed_txns: list[str]) -> dict:
    """
    Broadcast a transaction group signed by a resident's wallet: submit_noise()
    or authorize_self_for_location(), which both act on Txn.sender.

    Args:
        signed_txns: base64 msgpack-encoded SignedTransactions, in group order.

    Returns:
        dict with keys: tx_id (first transaction), events (from every transaction)
    """
    algod_client = get_algod_client()
    try:
        stxns = [algosdk.encoding.msgpack_decode(stxn) for stxn in signed_txns]
        tx_id = algod_client.send_transactions(stxns)
        events = []
        for stxn in stxns:
            info = algosdk.transaction.wait_for_confirmation(algod_client, stxn.get_txid(), 4)
            events += decode_events([base64.b64decode(entry) for entry in info.get("logs", [])])
    except Exception as e:
        raise classify_contract_error(e) from e

    logger.info(f"Relayed signed group: tx={tx_id} events={len(events)}")
    return {"tx_id": tx_id, "events": events}


# ─────────────────────────────────────────────────────────────────────────────
# Blockchain Operations: owner
# ─────────────────────────────────────────────────────────────────────────────


def allow_manager_on_chain(manager: str, location_id: int) -> dict:
    private_key, _ = get_deployer_credentials()
    result = _execute(ALLOW_MANAGER_METHOD, [manager, location_id], private_key)
    logger.info(f"Authorized manager {manager} for location {location_id}: tx={result['tx_id']}")
    return {"tx_id": result["tx_id"], "events": result["events"]}


def allow_manager_all_locations_on_chain(manager: str) -> dict:
    private_key, _ = get_deployer_credentials()
    result = _execute(ALLOW_MANAGER_ALL_METHOD, [manager], private_key)
    logger.info(f"Authorized manager {manager} for all locations: tx={result['tx_id']}")
    return {"tx_id": result["tx_id"], "events": result["events"]}


def revoke_manager_on_chain(manager: str) -> dict:
    private_key, _ = get_deployer_credentials()
    result = _execute(REVOKE_MANAGER_METHOD, [manager], private_key)
    logger.info(f"Revoked manager {manager}: tx={result['tx_id']}")
    return {"tx_id": result["tx_id"], "events": result["events"]}


# ─────────────────────────────────────────────────────────────────────────────
# Blockchain Operations: read-only
# ─────────────────────────────────────────────────────────────────────────────


def get_user_records_from_chain(user: str) -> list[dict]:
    """All records of a resident, with their ciphertext handles as hex."""
    count = int(_read(GET_USER_RECORD_COUNT_METHOD, [user]))
    records = []
    for index in range(count):
        timestamp, location_id, reporter = _read(GET_USER_RECORD_METHOD, [user, index])
        records.append(
            {
                "index": index,
                "timestamp": int(timestamp),
                "location_id": int(location_id),
                "reporter": str(reporter),
                "decibel_handle": bytes(_read(GET_USER_RECORD_DECIBEL_METHOD, [user, index])).hex(),
                "duration_handle": bytes(_read(GET_USER_RECORD_DURATION_METHOD, [user, index])).hex(),
            }
        )
    return records


def get_location_summary_from_chain(location_id: int) -> dict:
    total_reports, last_updated, alert_count = _read(GET_LOCATION_SUMMARY_METHOD, [location_id])
    return {
        "location_id": location_id,
        "total_reports": int(total_reports),
        "last_updated": int(last_updated),
        "alert_count": int(alert_count),
    }


def get_all_location_ids_from_chain() -> list[int]:
    return [int(location_id) for location_id in _read(GET_ALL_LOCATION_IDS_METHOD, [])]


def get_aggregate_handles_from_chain(location_id: int, gated: bool = False) -> dict:
    """
    Current aggregate handles of a location.

    gated=True goes through get_location_aggregated_data(), which only the
    owner and flagged managers pass; the reads here are simulated as the owner.
    """
    method = GET_AGGREGATED_METHOD if gated else GET_AGGREGATED_PUBLIC_METHOD
    exceeded_handle, duration_handle = _read(method, [location_id])
    return {
        "location_id": location_id,
        "exceeded_count_handle": bytes(exceeded_handle).hex(),
        "duration_handle": bytes(duration_handle).hex(),
    }


def _read_box(name: bytes) -> Optional[bytes]:
    algod_client = get_algod_client()
    try:
        response = algod_client.application_box_by_name(get_app_id(), name)
    except AlgodHTTPError as e:
        if e.code == 404:
            return None
        raise
    return base64.b64decode(response["value"])


def decode_fhe_operation(value: bytes) -> FheOperation:
    opcode, result_type, operand_a, operand_b, operand_c, scalar = FHE_OPERATION_TYPE.decode(value)
    return FheOperation(
        opcode=opcode,
        result_type=result_type,
        operand_a=bytes(operand_a),
        operand_b=bytes(operand_b),
        operand_c=bytes(operand_c),
        scalar=scalar,
    )


def read_fhe_operation(handle: bytes) -> Optional[FheOperation]:
    """Decode the "fhe_" box for a handle; the coprocessor's operation source."""
    value = _read_box(b"fhe_" + handle)
    return None if value is None else decode_fhe_operation(value)


def read_input_ciphertext(handle: bytes) -> Optional[bytes]:
    """Sealed resident input stored by submit_noise(); the coprocessor's ciphertext source."""
    return _read_box(b"inp_" + handle)


def acl_box_name(handle: bytes, address: str) -> bytes:
    """Box name of an ACL grant: the pair is hashed to stay within the 64-byte box name limit."""
    return b"acl_" + algosdk.encoding.checksum(handle + algosdk.encoding.decode_address(address))


def is_allowed_on_chain(handle: bytes, address: str) -> bool:
    """ACL lookup straight from box storage: the box exists iff the grant exists."""
    return _read_box(acl_box_name(handle, address)) is not None


# ─────────────────────────────────────────────────────────────────────────────
# ARC-28 event decoding
# ─────────────────────────────────────────────────────────────────────────────


def event_selector(name: str) -> bytes:
    abi_type, _ = EVENT_DEFINITIONS[name]
    return algosdk.encoding.checksum(f"{name}{abi_type}".encode())[:4]


def decode_events(logs: list[bytes]) -> list[dict]:
    """Decode NoiseMonitor ARC-28 events from raw application logs; other logs are skipped."""
    selectors = {event_selector(name): name for name in EVENT_DEFINITIONS}
    events = []
    for log in logs:
        name = selectors.get(log[:4])
        if name is None:
            continue
        abi_type, fields = EVENT_DEFINITIONS[name]
        values = abi.ABIType.from_string(abi_type).decode(log[4:])
        events.append({"event": name, **dict(zip(fields, values))})
    return events
