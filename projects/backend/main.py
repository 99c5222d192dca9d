"""
NoiseMonitor — FastAPI Backend
"""

import asyncio
import base64
import logging
import os
from typing import Optional

from dotenv import load_dotenv
from fastapi import BackgroundTasks, FastAPI, Header, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from algorand import (
    MIN_FEE,
    SUBMIT_FEE_MULTIPLIER,
    allow_manager_all_locations_on_chain,
    allow_manager_on_chain,
    get_aggregate_handles_from_chain,
    get_all_location_ids_from_chain,
    get_app_address,
    get_app_id,
    get_location_summary_from_chain,
    get_user_records_from_chain,
    is_allowed_on_chain,
    read_fhe_operation,
    read_input_ciphertext,
    relay_signed_group,
    revoke_manager_on_chain,
)
from coprocessor import HANDLE_SIZE, Coprocessor, DecryptionGrant
from errors import InvalidInput, NoiseMonitorError
from notifications import send_alert_notification

load_dotenv()

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
)
logger = logging.getLogger(__name__)

# Plaintext domain of a reading, checked when the coprocessor opens inputs
MAX_DECIBEL = 120
MAX_DURATION = 65_535

app = FastAPI(title="NoiseMonitor API", version="1.0.0", docs_url="/docs", redoc_url="/redoc")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(NoiseMonitorError)
async def noise_monitor_exception_handler(request: Request, exc: NoiseMonitorError):
    logger.info(f"{type(exc).__name__} on {request.method} {request.url}: {exc}")
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
        headers={"Access-Control-Allow-Origin": "*"},
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Unhandled exception on {request.method} {request.url}: {exc}", exc_info=True)
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc)},
        headers={"Access-Control-Allow-Origin": "*"},
    )


# ─────────────────────────────────────────────────────────────────────────────
# Pydantic models
# ─────────────────────────────────────────────────────────────────────────────

class EncryptInputsRequest(BaseModel):
    user_address: str
    decibel_ciphertext: str   # base64 SealedBox, see fhe_client.EncryptedInputBuilder
    duration_ciphertext: str  # base64 SealedBox


class DecryptRequest(BaseModel):
    handles: list[str]  # hex
    grant: DecryptionGrant


class ReportRequest(BaseModel):
    signed_txns: list[str]  # base64 msgpack SignedTransactions, in group order


class ManagerRequest(BaseModel):
    manager: str
    location_id: Optional[int] = None


# ─────────────────────────────────────────────────────────────────────────────
# Coprocessor and chain helpers
# ─────────────────────────────────────────────────────────────────────────────

_coprocessor: Optional[Coprocessor] = None


def get_coprocessor() -> Coprocessor:
    """Lazily build the coprocessor for the configured application."""
    global _coprocessor
    if _coprocessor is None:
        app_id = get_app_id()
        _coprocessor = Coprocessor.from_environment(
            app_id,
            get_app_address(app_id),
            read_fhe_operation,
            read_input_ciphertext,
            is_allowed_on_chain,
        )
    return _coprocessor


async def _run_blocking(func, *args):
    """Run a blocking algod call off the event loop; missing config becomes 503."""
    try:
        return await asyncio.get_event_loop().run_in_executor(None, func, *args)
    except ValueError as e:
        if "not set" in str(e).lower():
            raise HTTPException(status_code=503, detail=f"Blockchain not configured: {e}")
        raise


def _require_admin(admin_key: Optional[str]) -> None:
    expected = os.getenv("ADMIN_API_KEY", "")
    if not expected:
        raise HTTPException(status_code=503, detail="Admin endpoints disabled. Set ADMIN_API_KEY.")
    if admin_key != expected:
        raise HTTPException(status_code=401, detail="Invalid admin key")


def _decode_b64(value: str, field: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except ValueError:
        raise InvalidInput(f"{field} must be base64")


def _decode_handle(value: str) -> bytes:
    try:
        handle = bytes.fromhex(value)
    except ValueError:
        raise InvalidInput(f"Handle must be hex: {value}")
    if len(handle) != HANDLE_SIZE:
        raise InvalidInput(f"Handle must be {HANDLE_SIZE} bytes: {value}")
    return handle


# ─────────────────────────────────────────────────────────────────────────────
# Endpoints
# ─────────────────────────────────────────────────────────────────────────────

@app.get("/")
async def root():
    return {"service": "NoiseMonitor API", "status": "healthy", "version": "1.0.0"}


@app.get("/health")
async def health():
    app_id = os.getenv("ALGORAND_APP_ID", "0")
    return {
        "status": "healthy",
        "app_id_configured": app_id != "0",
        "app_id": app_id,
        "mnemonic_configured": bool(os.getenv("DEPLOYER_MNEMONIC")),
        "network_key_configured": bool(os.getenv("COPROCESSOR_NETWORK_KEY")),
        "input_verifier_configured": bool(os.getenv("INPUT_VERIFIER_MNEMONIC")),
        "algod_server": os.getenv("ALGORAND_ALGOD_SERVER", "https://testnet-api.algonode.cloud"),
    }


# ── Endpoint 1: Network key and encrypted inputs ─────────────────────────────

@app.get("/api/network-key")
async def network_key():
    """Public key residents seal their readings to."""
    coprocessor = await _run_blocking(get_coprocessor)
    return {"network_public_key": coprocessor.network_public_key.hex()}


@app.post("/api/inputs")
async def encrypt_inputs(request: EncryptInputsRequest):
    """
    Verify a resident's sealed (decibel, duration) pair and return the
    handles plus the input proof that submit_noise() checks on-chain. The
    resident passes the same ciphertexts to submit_noise(), which stores them.
    """
    coprocessor = await _run_blocking(get_coprocessor)
    ciphertexts = [
        _decode_b64(request.decibel_ciphertext, "decibel_ciphertext"),
        _decode_b64(request.duration_ciphertext, "duration_ciphertext"),
    ]
    encrypted = coprocessor.verify_inputs(request.user_address, ciphertexts, [MAX_DECIBEL, MAX_DURATION])
    return {
        "decibel_handle": encrypted.handles[0].hex(),
        "duration_handle": encrypted.handles[1].hex(),
        "input_proof": base64.b64encode(encrypted.input_proof).decode(),
        "submit_fee": SUBMIT_FEE_MULTIPLIER * MIN_FEE,
    }


# ── Endpoint 2: User decryption ──────────────────────────────────────────────

@app.post("/api/decrypt")
async def decrypt(request: DecryptRequest):
    """Re-encrypt plaintexts to the grant's key, gated by the on-chain ACL."""
    if not request.handles:
        raise InvalidInput("No handles to decrypt")
    handles = [_decode_handle(handle) for handle in request.handles]
    coprocessor = await _run_blocking(get_coprocessor)
    results = await _run_blocking(coprocessor.user_decrypt, handles, request.grant)
    return {"results": results}


# ── Endpoint 3: Relay a signed noise report ──────────────────────────────────

@app.post("/api/reports")
async def submit_report(request: ReportRequest, background_tasks: BackgroundTasks):
    """
    Relay a resident-signed submit_noise() group. Residents sign their own
    transactions: the contract stores the record under Txn.sender.
    """
    if not request.signed_txns:
        raise InvalidInput("signed_txns must not be empty")

    result = await _run_blocking(relay_signed_group, request.signed_txns)

    submitted = [event for event in result["events"] if event["event"] == "NoiseReportSubmitted"]
    alerts = [event for event in result["events"] if event["event"] == "NoiseAlert"]
    for alert in alerts:
        logger.info(f"NoiseAlert: location={alert['location_id']} total_reports={alert['total_reports']}")
        background_tasks.add_task(
            send_alert_notification,
            alert["location_id"],
            alert["timestamp"],
            alert["total_reports"],
            result["tx_id"],
        )

    return {
        "success": True,
        "tx_id": result["tx_id"],
        "record_index": submitted[0]["record_index"] if submitted else None,
        "alert_triggered": bool(alerts),
        "events": result["events"],
        "message": "Encrypted noise report recorded on the Algorand blockchain",
    }


# ── Endpoint 4: Locations ────────────────────────────────────────────────────

@app.get("/api/locations")
async def list_locations():
    location_ids = await _run_blocking(get_all_location_ids_from_chain)
    summaries = [await _run_blocking(get_location_summary_from_chain, location_id) for location_id in location_ids]
    return {"count": len(location_ids), "locations": summaries}


@app.get("/api/locations/{location_id}")
async def location_summary(location_id: int):
    return await _run_blocking(get_location_summary_from_chain, location_id)


@app.get("/api/locations/{location_id}/handles")
async def location_handles(location_id: int):
    """Aggregate handles; decrypting them still needs an ACL grant."""
    return await _run_blocking(get_aggregate_handles_from_chain, location_id)


# ── Endpoint 5: Resident records ─────────────────────────────────────────────

@app.get("/api/users/{address}/records")
async def user_records(address: str):
    records = await _run_blocking(get_user_records_from_chain, address)
    return {"address": address, "count": len(records), "records": records}


# ── Endpoints 6–9: Administration (owner key) ────────────────────────────────

@app.post("/api/admin/managers")
async def authorize_manager(request: ManagerRequest, x_admin_key: Optional[str] = Header(None)):
    _require_admin(x_admin_key)
    if request.location_id is None:
        raise InvalidInput("location_id is required")
    result = await _run_blocking(allow_manager_on_chain, request.manager, request.location_id)
    return {"success": True, "tx_id": result["tx_id"], "manager": request.manager, "location_id": request.location_id}


@app.post("/api/admin/managers/all")
async def authorize_manager_all(request: ManagerRequest, x_admin_key: Optional[str] = Header(None)):
    _require_admin(x_admin_key)
    result = await _run_blocking(allow_manager_all_locations_on_chain, request.manager)
    return {"success": True, "tx_id": result["tx_id"], "manager": request.manager}


@app.delete("/api/admin/managers/{address}")
async def revoke_manager(address: str, x_admin_key: Optional[str] = Header(None)):
    _require_admin(x_admin_key)
    result = await _run_blocking(revoke_manager_on_chain, address)
    return {"success": True, "tx_id": result["tx_id"], "manager": address}


@app.get("/api/admin/locations/{location_id}/handles")
async def gated_location_handles(location_id: int, x_admin_key: Optional[str] = Header(None)):
    """Aggregate handles through the owner/manager-gated accessor."""
    _require_admin(x_admin_key)
    return await _run_blocking(get_aggregate_handles_from_chain, location_id, True)
