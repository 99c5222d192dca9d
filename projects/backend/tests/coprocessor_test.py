"""
Coprocessor — Test Suite
=========================
Input verification, evaluation over the symbolic operation log, and
ACL-gated user decryption.
"""

import algosdk
import pytest
from nacl.public import PrivateKey
from nacl.signing import VerifyKey

from conftest import APP_ADDRESS, APP_ID
from coprocessor import Coprocessor, DecryptionGrant, input_proof_message
from errors import InvalidInput, PlatformError, Unauthorized
from fhe_client import EncryptedInputBuilder, create_decryption_grant, generate_keypair, open_user_decrypt_results

NOW = 1_700_000_000


def encrypt(coprocessor: Coprocessor, address: str, *values: int):
    builder = EncryptedInputBuilder(coprocessor.network_public_key, address)
    for value in values:
        builder.add16(value)
    return builder.encrypt(coprocessor)


def submit(ledger, coprocessor, address, decibel, duration, totals=None):
    """Replays what submit_noise() records on-chain for one report."""
    encrypted = encrypt(coprocessor, address, decibel, duration)
    decibel_handle = ledger.consume_input(encrypted.handles[0], encrypted.ciphertexts[0])
    duration_handle = ledger.consume_input(encrypted.handles[1], encrypted.ciphertexts[1])
    ledger.allow(decibel_handle, APP_ADDRESS, address)
    ledger.allow(duration_handle, APP_ADDRESS, address)
    exceeded_total, duration_total = ledger.merge(totals, decibel_handle, duration_handle)
    ledger.allow(exceeded_total, APP_ADDRESS, address)
    ledger.allow(duration_total, APP_ADDRESS, address)
    return (decibel_handle, duration_handle), (exceeded_total, duration_total)


# ─────────────────────────────────────────────────────────────────────────────
# Test: Input verification
# ─────────────────────────────────────────────────────────────────────────────


def test_input_proof_verifies_against_verifier_account(coprocessor, verifier, resident) -> None:
    encrypted = encrypt(coprocessor, resident[1], 75, 30)

    assert len(encrypted.handles) == 2
    verify_key = VerifyKey(algosdk.encoding.decode_address(verifier[1]))
    verify_key.verify(input_proof_message(resident[1], encrypted.handles), encrypted.input_proof)


def test_input_handles_are_bound_to_the_user(coprocessor, resident, manager) -> None:
    ciphertext = EncryptedInputBuilder(coprocessor.network_public_key, resident[1]).add16(75).ciphertexts()
    for_resident = coprocessor.verify_inputs(resident[1], ciphertext)
    for_manager = coprocessor.verify_inputs(manager[1], ciphertext)
    assert for_resident.handles[0] != for_manager.handles[0]


def test_verify_inputs_enforces_upper_bounds(coprocessor, resident) -> None:
    ciphertexts = EncryptedInputBuilder(coprocessor.network_public_key, resident[1]).add16(121).add16(30).ciphertexts()
    with pytest.raises(InvalidInput):
        coprocessor.verify_inputs(resident[1], ciphertexts, [120, 65_535])


def test_verify_inputs_accepts_boundary_values(coprocessor, resident) -> None:
    ciphertexts = EncryptedInputBuilder(coprocessor.network_public_key, resident[1]).add16(120).add16(65_535).ciphertexts()
    encrypted = coprocessor.verify_inputs(resident[1], ciphertexts, [120, 65_535])
    assert len(encrypted.handles) == 2


def test_verify_inputs_rejects_foreign_ciphertext(coprocessor, resident) -> None:
    with pytest.raises(PlatformError):
        coprocessor.verify_inputs(resident[1], [b"not a sealed box" * 4])


def test_verify_inputs_rejects_invalid_address(coprocessor) -> None:
    with pytest.raises(PlatformError):
        coprocessor.verify_inputs("not-an-address", [b""])


def test_verify_inputs_rejects_empty_batch(coprocessor, resident) -> None:
    with pytest.raises(PlatformError):
        coprocessor.verify_inputs(resident[1], [])


# ─────────────────────────────────────────────────────────────────────────────
# Test: Evaluation
# ─────────────────────────────────────────────────────────────────────────────


def test_evaluate_counts_exceedances_and_sums_durations(ledger, coprocessor, resident, manager) -> None:
    _, totals = submit(ledger, coprocessor, resident[1], 75, 30)
    _, totals = submit(ledger, coprocessor, manager[1], 65, 20, totals)
    _, totals = submit(ledger, coprocessor, resident[1], 71, 5, totals)

    exceeded_total, duration_total = totals
    assert coprocessor.evaluate(exceeded_total) == 2
    assert coprocessor.evaluate(duration_total) == 55


def test_threshold_comparison_is_strict(ledger, coprocessor, resident) -> None:
    _, (exceeded_total, _) = submit(ledger, coprocessor, resident[1], 70, 1)
    assert coprocessor.evaluate(exceeded_total) == 0


def test_duration_sum_wraps_at_16_bits(ledger, coprocessor, resident) -> None:
    _, totals = submit(ledger, coprocessor, resident[1], 10, 65_535)
    _, (_, duration_total) = submit(ledger, coprocessor, resident[1], 10, 2, totals)
    assert coprocessor.evaluate(duration_total) == 1


def test_evaluate_unknown_handle(coprocessor) -> None:
    with pytest.raises(PlatformError, match="Unknown ciphertext handle"):
        coprocessor.evaluate(bytes(32))


def test_evaluate_input_without_stored_ciphertext(ledger, coprocessor) -> None:
    handle = ledger.consume_input(b"\x01" * 32, b"")
    ledger.ciphertexts.clear()
    with pytest.raises(PlatformError, match="No input ciphertext stored"):
        coprocessor.evaluate(handle)


def test_restarted_coprocessor_evaluates_from_ledger_alone(ledger, verifier, resident) -> None:
    network_key = PrivateKey.generate()
    first = Coprocessor(
        network_key, verifier[0], APP_ID, APP_ADDRESS, ledger.read, ledger.read_ciphertext, ledger.is_allowed
    )
    (decibel, _), (exceeded_total, duration_total) = submit(ledger, first, resident[1], 75, 30)

    restarted = Coprocessor(
        network_key, verifier[0], APP_ID, APP_ADDRESS, ledger.read, ledger.read_ciphertext, ledger.is_allowed
    )

    assert restarted.evaluate(decibel) == 75
    assert restarted.evaluate(exceeded_total) == 1
    assert restarted.evaluate(duration_total) == 30


# ─────────────────────────────────────────────────────────────────────────────
# Test: User decryption
# ─────────────────────────────────────────────────────────────────────────────


def test_resident_decrypts_own_record(ledger, coprocessor, resident) -> None:
    (decibel, duration), _ = submit(ledger, coprocessor, resident[1], 75, 30)
    public_key, private_key = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW)

    sealed = coprocessor.user_decrypt([decibel, duration], grant, now=NOW + 60)

    assert open_user_decrypt_results(private_key, sealed) == {decibel.hex(): 75, duration.hex(): 30}


def test_decrypt_requires_user_grant(ledger, coprocessor, resident, manager) -> None:
    (decibel, _), _ = submit(ledger, coprocessor, resident[1], 75, 30)
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(manager[0], public_key, [APP_ID], start_timestamp=NOW)

    with pytest.raises(Unauthorized, match="not allowed"):
        coprocessor.user_decrypt([decibel], grant, now=NOW)


def test_decrypt_requires_contract_grant(ledger, coprocessor, resident) -> None:
    encrypted = encrypt(coprocessor, resident[1], 75)
    handle = ledger.consume_input(encrypted.handles[0], encrypted.ciphertexts[0])
    ledger.allow(handle, resident[1])
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW)

    with pytest.raises(Unauthorized, match="Contract holds no grant"):
        coprocessor.user_decrypt([handle], grant, now=NOW)


def test_manager_decrypts_location_aggregates(ledger, coprocessor, resident, manager) -> None:
    _, (exceeded_total, duration_total) = submit(ledger, coprocessor, resident[1], 75, 30)
    ledger.allow(exceeded_total, manager[1])
    ledger.allow(duration_total, manager[1])
    public_key, private_key = generate_keypair()
    grant = create_decryption_grant(manager[0], public_key, [APP_ID], start_timestamp=NOW)

    sealed = coprocessor.user_decrypt([exceeded_total, duration_total], grant, now=NOW)

    assert open_user_decrypt_results(private_key, sealed) == {exceeded_total.hex(): 1, duration_total.hex(): 30}


@pytest.mark.parametrize("now", [NOW - 1, NOW + 86_400])
def test_grant_outside_validity_window(ledger, coprocessor, resident, now) -> None:
    (decibel, _), _ = submit(ledger, coprocessor, resident[1], 75, 30)
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW, duration_days=1)

    with pytest.raises(Unauthorized, match="expired or not yet valid"):
        coprocessor.user_decrypt([decibel], grant, now=now)


def test_grant_for_another_application(coprocessor, resident) -> None:
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID + 1], start_timestamp=NOW)
    with pytest.raises(Unauthorized, match="does not cover application"):
        coprocessor.verify_grant(grant, now=NOW)


def test_tampered_grant_signature(coprocessor, resident) -> None:
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW)
    widened = grant.model_copy(update={"duration_days": 30})
    with pytest.raises(Unauthorized, match="signature is invalid"):
        coprocessor.verify_grant(widened, now=NOW)


def test_grant_signed_by_another_wallet(coprocessor, resident, manager) -> None:
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(manager[0], public_key, [APP_ID], start_timestamp=NOW)
    impersonated = grant.model_copy(update={"user_address": resident[1]})
    with pytest.raises(Unauthorized):
        coprocessor.verify_grant(impersonated, now=NOW)


def test_grant_duration_limits(coprocessor, resident) -> None:
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW, duration_days=0)
    with pytest.raises(Unauthorized, match="duration"):
        coprocessor.verify_grant(grant, now=NOW)


def test_malformed_grant_public_key(ledger, coprocessor, resident) -> None:
    (decibel, _), _ = submit(ledger, coprocessor, resident[1], 75, 30)
    grant = create_decryption_grant(resident[0], "zz", [APP_ID], start_timestamp=NOW)
    with pytest.raises(Unauthorized, match="Malformed grant public key"):
        coprocessor.user_decrypt([decibel], grant, now=NOW)


def test_from_environment_generates_missing_keys(clean_env, ledger) -> None:
    coprocessor = Coprocessor.from_environment(APP_ID, APP_ADDRESS, ledger.read, ledger.read_ciphertext, ledger.is_allowed)
    assert len(coprocessor.network_public_key) == 32
    assert algosdk.encoding.is_valid_address(coprocessor.verifier_address)


def test_grant_model_round_trips_json(resident) -> None:
    public_key, _ = generate_keypair()
    grant = create_decryption_grant(resident[0], public_key, [APP_ID], start_timestamp=NOW)
    assert DecryptionGrant.model_validate_json(grant.model_dump_json()) == grant
