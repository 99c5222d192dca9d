"""
NoiseMonitor Smart Contract — Encrypted Neighbourhood Noise Registry
=====================================================================
Deployed on Algorand via AlgoKit + Puya compiler.

Residents report noise events (decibel level and duration) as encrypted
16-bit values. The contract aggregates them per location without ever seeing
a plaintext: every homomorphic operation is executed symbolically and recorded
on-chain, and the FHE coprocessor evaluates the recorded operations off-chain.

Architecture:
  - Record boxes:      per-resident append-only reports        (namespace: "rec_")
  - Count boxes:       per-resident report counter             (namespace: "cnt_")
  - Aggregate boxes:   per-location encrypted statistics       (namespace: "agg_")
  - Location index:    ordered list + membership set           (namespaces: "lix_", "lrg_")
  - Reporter set:      resident x location membership          (namespace: "rpl_")
  - Manager boxes:     manager role flags                      (namespace: "mgr_")
  - FHE operation log: handle → symbolic operation             (namespace: "fhe_")
  - Input ciphertexts: handle → sealed resident input          (namespace: "inp_")
  - ACL boxes:         sha512_256(handle + account) → permission (namespace: "acl_")

Ciphertext handles:
  A handle is a 32-byte sha512_256 digest. Every homomorphic operation yields a
  fresh handle, so decrypt permissions must be re-granted after every mutation
  of an encrypted field. Grants are additive; nothing ever deletes an ACL box.

Box names are capped at 64 bytes by the AVM, so keys that combine two 32-byte
values (handle + account) are hashed down to 32 bytes before prefixing.

Trust boundary:
  The alert counter (exceeded_count_for_alert) is driven by a plaintext flag
  supplied by the caller, not by the encrypted threshold comparison. The
  contract cannot verify that the flag matches the encrypted comparison.
"""

import typing

from algopy import (
    Account,
    ARC4Contract,
    BoxMap,
    Bytes,
    Global,
    OpUpFeeSource,
    Txn,
    UInt64,
    arc4,
    ensure_budget,
    op,
    subroutine,
    urange,
)
from algopy.arc4 import abimethod

# Public noise threshold in dB, compared under encryption
NOISE_THRESHOLD = 70
# Caller-asserted exceedances needed to raise one alert
ALERT_THRESHOLD = 2

# FHE operation codes (mirrored by the coprocessor)
OP_INPUT = 0
OP_TRIVIAL = 1
OP_GT = 2
OP_SELECT = 3
OP_ADD = 4

# FHE result types
TYPE_EBOOL = 0
TYPE_EUINT16 = 1

# ed25519 verification alone costs 1900 opcodes; every ACL grant hashes its key
SUBMIT_OPCODE_BUDGET = 4_200

Handle: typing.TypeAlias = arc4.StaticArray[arc4.Byte, typing.Literal[32]]


# ─────────────────────────────────────────────────────────────────────────────
# ARC-4 Data Structures
# ─────────────────────────────────────────────────────────────────────────────


class NoiseRecord(arc4.Struct):
    """
    One noise report. Written once by submit_noise() and never mutated.

    Field encoding:
        decibel      → byte[32]  encrypted uint16 handle (0–120 dB, enforced off-chain)
        duration     → byte[32]  encrypted uint16 handle (minutes)
        timestamp    → uint64    caller-supplied Unix seconds
        location_id  → uint64    building/block identifier
        reporter     → address   submitting resident
        is_processed → bool      always False in the current design
    """

    decibel: Handle
    duration: Handle
    timestamp: arc4.UInt64
    location_id: arc4.UInt64
    reporter: arc4.Address
    is_processed: arc4.Bool


class AggregatedData(arc4.Struct):
    """Per-location statistics, created lazily on the first report."""

    total_reports: arc4.UInt64
    total_exceeded_count: Handle  # encrypted count of reports above NOISE_THRESHOLD
    total_duration: Handle  # encrypted sum of durations
    last_updated: arc4.UInt64
    alert_count: arc4.UInt64
    exceeded_count_for_alert: arc4.UInt64  # plaintext, caller-attested


class FheOperation(arc4.Struct):
    """
    Symbolic homomorphic operation that produced a handle.

    Operand usage by opcode:
        OP_INPUT   → none (sealed ciphertext stored in the "inp_" box)
        OP_TRIVIAL → scalar
        OP_GT      → operand_a > scalar
        OP_SELECT  → operand_a ? operand_b : operand_c
        OP_ADD     → operand_a + operand_b
    """

    opcode: arc4.UInt8
    result_type: arc4.UInt8
    operand_a: Handle
    operand_b: Handle
    operand_c: Handle
    scalar: arc4.UInt64


# ─────────────────────────────────────────────────────────────────────────────
# ARC-28 Events
# ─────────────────────────────────────────────────────────────────────────────


class NoiseReportSubmitted(arc4.Struct):
    reporter: arc4.Address
    location_id: arc4.UInt64
    timestamp: arc4.UInt64
    record_index: arc4.UInt64


class NoiseAlert(arc4.Struct):
    location_id: arc4.UInt64
    timestamp: arc4.UInt64
    total_reports: arc4.UInt64


class ManagerAuthorizationChanged(arc4.Struct):
    manager: arc4.Address
    authorized: arc4.Bool


# ─────────────────────────────────────────────────────────────────────────────
# Main Contract
# ─────────────────────────────────────────────────────────────────────────────


class NoiseMonitor(ARC4Contract):
    """
    NoiseMonitor — encrypted aggregation and access-control engine

    Submission flow:
      1. Resident encrypts decibel and duration with the FHE client SDK
      2. Coprocessor verifies the ciphertexts and signs an input proof
      3. Resident calls submit_noise() with handles, proof and plaintext metadata
      4. Record is appended, location registered, aggregate merged
      5. Resident and contract are granted decrypt rights on every new handle

    Read flow:
      1. Anyone may fetch aggregate handles via the public accessor
      2. Only the owner and flagged managers may use the gated accessor
      3. Plaintext is released off-chain by the coprocessor, and only to
         accounts holding an ACL grant on the exact handle
    """

    owner: Account
    input_verifier: Account
    location_count: UInt64
    fhe_nonce: UInt64

    def __init__(self) -> None:
        self.owner = Account()
        self.input_verifier = Account()
        self.location_count = UInt64(0)
        self.fhe_nonce = UInt64(0)

        # Record Store
        self.records = BoxMap(Bytes, NoiseRecord, key_prefix=b"rec_")
        self.record_counts = BoxMap(Account, UInt64, key_prefix=b"cnt_")
        self.reported_locations = BoxMap(Bytes, arc4.Bool, key_prefix=b"rpl_")

        # Location Registry
        self.location_ids = BoxMap(UInt64, arc4.UInt64, key_prefix=b"lix_")
        self.registered_locations = BoxMap(UInt64, arc4.Bool, key_prefix=b"lrg_")

        # Aggregation Engine
        self.aggregates = BoxMap(UInt64, AggregatedData, key_prefix=b"agg_")
        self.fhe_operations = BoxMap(Bytes, FheOperation, key_prefix=b"fhe_")
        self.input_ciphertexts = BoxMap(Bytes, Bytes, key_prefix=b"inp_")

        # Access-Control Ledger
        self.authorized_managers = BoxMap(Account, arc4.Bool, key_prefix=b"mgr_")
        self.acl = BoxMap(Bytes, arc4.Bool, key_prefix=b"acl_")

    # ─────────────────────────────────────────────────────────────────────
    # Lifecycle & ownership
    # ─────────────────────────────────────────────────────────────────────

    @abimethod(create="require")
    def create(self, input_verifier: arc4.Address) -> None:
        """
        Create the application. The creator becomes the owner.

        Args:
            input_verifier: Account whose ed25519 key signs the coprocessor's
                            input proofs.
        """
        assert input_verifier.native != Global.zero_address, "Invalid input verifier"
        self.owner = Txn.sender
        self.input_verifier = input_verifier.native

    @abimethod()
    def transfer_ownership(self, new_owner: arc4.Address) -> None:
        self._only_owner()
        assert new_owner.native != Global.zero_address, "Invalid new owner"
        self.owner = new_owner.native

    @abimethod(readonly=True)
    def get_owner(self) -> arc4.Address:
        return arc4.Address(self.owner)

    @abimethod(readonly=True)
    def is_manager(self, manager: arc4.Address) -> arc4.Bool:
        return arc4.Bool(self._is_manager(manager.native))

    # ─────────────────────────────────────────────────────────────────────
    # Submission entry point
    # ─────────────────────────────────────────────────────────────────────

    @abimethod()
    def submit_noise(
        self,
        decibel_input: Handle,
        duration_input: Handle,
        decibel_ciphertext: arc4.DynamicBytes,
        duration_ciphertext: arc4.DynamicBytes,
        input_proof: arc4.DynamicBytes,
        timestamp: arc4.UInt64,
        location_id: arc4.UInt64,
        exceeds_threshold: arc4.Bool,
    ) -> None:
        """
        Submit one encrypted noise report.

        Args:
            decibel_input       : Handle of the encrypted decibel value.
            duration_input      : Handle of the encrypted duration value.
            decibel_ciphertext  : Sealed decibel input; its handle must equal
                                  sha512_256(b"input" + sender + ciphertext).
            duration_ciphertext : Sealed duration input, bound the same way.
            input_proof         : Coprocessor ed25519 signature over
                                  b"fhe-input" + sender + decibel_input + duration_input.
            timestamp           : Unix seconds of the event, must be non-zero.
            location_id         : Building/block identifier, must be non-zero.
            exceeds_threshold   : Caller-attested plaintext flag feeding the alert counter.
                                  Not verified against the encrypted comparison.

        Errors:
            • "Invalid timestamp" / "Invalid location ID" — zero metadata
            • "Invalid input proof" — proof does not verify
            • "Ciphertext does not match handle" — handle not bound to sender + ciphertext
            • "Input already consumed" — handle replay
        """
        assert timestamp.native > 0, "Invalid timestamp"
        assert location_id.native > 0, "Invalid location ID"

        ensure_budget(SUBMIT_OPCODE_BUDGET, OpUpFeeSource.GroupCredit)

        # ── Convert external inputs into on-chain handles ────────────────────
        self._verify_input_proof(decibel_input, duration_input, input_proof.native)
        decibel = self._from_external(decibel_input, decibel_ciphertext.native)
        duration = self._from_external(duration_input, duration_ciphertext.native)

        # ── Record Store ────────────────────────────────────────────────────
        record_index = self._append_record(
            Txn.sender, decibel, duration, timestamp.native, location_id.native
        )

        # ── Location Registry + Aggregation Engine ───────────────────────────
        self._ensure_registered(location_id.native)
        self._merge(
            location_id.native,
            decibel,
            duration,
            timestamp.native,
            exceeds_threshold.native,
        )

        arc4.emit(
            NoiseReportSubmitted(
                reporter=arc4.Address(Txn.sender),
                location_id=location_id,
                timestamp=timestamp,
                record_index=arc4.UInt64(record_index),
            )
        )

    # ─────────────────────────────────────────────────────────────────────
    # Record Store accessors
    # ─────────────────────────────────────────────────────────────────────

    @abimethod(readonly=True)
    def get_user_record_count(self, user: arc4.Address) -> arc4.UInt64:
        return arc4.UInt64(self.record_counts.get(user.native, default=UInt64(0)))

    @abimethod(readonly=True)
    def get_user_record(
        self,
        user: arc4.Address,
        index: arc4.UInt64,
    ) -> tuple[arc4.UInt64, arc4.UInt64, arc4.Address]:
        """Return (timestamp, location_id, reporter) of a resident's record."""
        record = self._load_record(user.native, index.native)
        return record.timestamp, record.location_id, record.reporter

    @abimethod(readonly=True)
    def get_user_record_decibel(self, user: arc4.Address, index: arc4.UInt64) -> Handle:
        record = self._load_record(user.native, index.native)
        return record.decibel.copy()

    @abimethod(readonly=True)
    def get_user_record_duration(self, user: arc4.Address, index: arc4.UInt64) -> Handle:
        record = self._load_record(user.native, index.native)
        return record.duration.copy()

    # ─────────────────────────────────────────────────────────────────────
    # Location accessors
    # ─────────────────────────────────────────────────────────────────────

    @abimethod(readonly=True)
    def get_location_summary(
        self,
        location_id: arc4.UInt64,
    ) -> tuple[arc4.UInt64, arc4.UInt64, arc4.UInt64]:
        """
        Return (total_reports, last_updated, alert_count).

        An unregistered location yields zeros rather than failing.
        """
        if location_id.native in self.aggregates:
            aggregate = self.aggregates[location_id.native].copy()
            return aggregate.total_reports, aggregate.last_updated, aggregate.alert_count
        return arc4.UInt64(0), arc4.UInt64(0), arc4.UInt64(0)

    @abimethod(readonly=True)
    def get_location_aggregated_data_public(
        self,
        location_id: arc4.UInt64,
    ) -> tuple[Handle, Handle]:
        """
        Return (exceeded_count_handle, duration_handle) to any caller.

        Handles are useless without an ACL grant, so exposing them is safe.
        """
        aggregate = self._load_aggregate(location_id.native)
        assert aggregate.total_reports.native > 0, "No data available"
        return aggregate.total_exceeded_count.copy(), aggregate.total_duration.copy()

    @abimethod(readonly=True)
    def get_location_aggregated_data(
        self,
        location_id: arc4.UInt64,
    ) -> tuple[Handle, Handle]:
        """Same handles as the public accessor, gated to the owner and managers."""
        assert Txn.sender == self.owner or self._is_manager(Txn.sender), "Not authorized"
        aggregate = self._load_aggregate(location_id.native)
        return aggregate.total_exceeded_count.copy(), aggregate.total_duration.copy()

    @abimethod(readonly=True)
    def get_all_location_ids(self) -> arc4.DynamicArray[arc4.UInt64]:
        ids = arc4.DynamicArray[arc4.UInt64]()
        for i in urange(self.location_count):
            ids.append(self.location_ids[i])
        return ids

    @abimethod(readonly=True)
    def get_location_count(self) -> arc4.UInt64:
        return arc4.UInt64(self.location_count)

    # ─────────────────────────────────────────────────────────────────────
    # Access-Control Ledger
    # ─────────────────────────────────────────────────────────────────────

    @abimethod()
    def allow_manager(self, manager: arc4.Address, location_id: arc4.UInt64) -> None:
        """
        Flag a manager and grant decrypt rights on one location's aggregates.

        Errors:
            • "Only owner can call this function"
            • "Invalid manager address" — zero address
            • "Location not registered"
        """
        self._only_owner()
        assert manager.native != Global.zero_address, "Invalid manager address"
        assert location_id.native in self.registered_locations, "Location not registered"

        self.authorized_managers[manager.native] = arc4.Bool(True)
        self._grant_location(location_id.native, manager.native)

        arc4.emit(ManagerAuthorizationChanged(manager=manager, authorized=arc4.Bool(True)))

    @abimethod()
    def allow_manager_all_locations(self, manager: arc4.Address) -> None:
        """
        Flag a manager and grant decrypt rights on every registered location.

        Cost grows linearly with the number of locations; callers must supply
        box references for every aggregate.
        """
        self._only_owner()
        assert manager.native != Global.zero_address, "Invalid manager address"

        self.authorized_managers[manager.native] = arc4.Bool(True)
        for i in urange(self.location_count):
            self._grant_location(self.location_ids[i].native, manager.native)

        arc4.emit(ManagerAuthorizationChanged(manager=manager, authorized=arc4.Bool(True)))

    @abimethod()
    def revoke_manager(self, manager: arc4.Address) -> None:
        """
        Clear a manager's role flag.

        Handle grants already issued stay in the ACL: revocation only gates
        future reads through get_location_aggregated_data().
        """
        self._only_owner()
        self.authorized_managers[manager.native] = arc4.Bool(False)
        arc4.emit(ManagerAuthorizationChanged(manager=manager, authorized=arc4.Bool(False)))

    @abimethod()
    def authorize_self_for_location(self, location_id: arc4.UInt64) -> None:
        """Grant the caller decrypt rights on a location they have reported for."""
        reporter_key = Txn.sender.bytes + op.itob(location_id.native)
        assert reporter_key in self.reported_locations, "Not authorized: no reports for this location"
        self._grant_location(location_id.native, Txn.sender)

    @abimethod(readonly=True)
    def is_allowed(self, handle: Handle, account: arc4.Address) -> arc4.Bool:
        """ACL query used by the coprocessor before releasing plaintext."""
        return arc4.Bool(self._is_allowed(handle, account.native))

    # ─────────────────────────────────────────────────────────────────────
    # Internal: Record Store & Location Registry
    # ─────────────────────────────────────────────────────────────────────

    @subroutine
    def _append_record(
        self,
        submitter: Account,
        decibel: Handle,
        duration: Handle,
        timestamp: UInt64,
        location_id: UInt64,
    ) -> UInt64:
        index = self.record_counts.get(submitter, default=UInt64(0))
        self.records[submitter.bytes + op.itob(index)] = NoiseRecord(
            decibel=decibel.copy(),
            duration=duration.copy(),
            timestamp=arc4.UInt64(timestamp),
            location_id=arc4.UInt64(location_id),
            reporter=arc4.Address(submitter),
            is_processed=arc4.Bool(False),
        )
        self.record_counts[submitter] = index + 1
        self.reported_locations[submitter.bytes + op.itob(location_id)] = arc4.Bool(True)

        self._allow_this(decibel)
        self._allow(decibel, submitter)
        self._allow_this(duration)
        self._allow(duration, submitter)
        return index

    @subroutine
    def _load_record(self, user: Account, index: UInt64) -> NoiseRecord:
        assert index < self.record_counts.get(user, default=UInt64(0)), "Index out of bounds"
        return self.records[user.bytes + op.itob(index)].copy()

    @subroutine
    def _ensure_registered(self, location_id: UInt64) -> None:
        if location_id not in self.registered_locations:
            self.registered_locations[location_id] = arc4.Bool(True)
            self.location_ids[self.location_count] = arc4.UInt64(location_id)
            self.location_count += 1

    # ─────────────────────────────────────────────────────────────────────
    # Internal: Aggregation Engine
    # ─────────────────────────────────────────────────────────────────────

    @subroutine
    def _merge(
        self,
        location_id: UInt64,
        decibel: Handle,
        duration: Handle,
        timestamp: UInt64,
        exceeds_threshold: bool,
    ) -> None:
        if location_id not in self.aggregates:
            exceeded_zero = self._trivial_encrypt(UInt64(0))
            duration_zero = self._trivial_encrypt(UInt64(0))
            self._allow_this(exceeded_zero)
            self._allow_this(duration_zero)
            self.aggregates[location_id] = AggregatedData(
                total_reports=arc4.UInt64(0),
                total_exceeded_count=exceeded_zero.copy(),
                total_duration=duration_zero.copy(),
                last_updated=arc4.UInt64(0),
                alert_count=arc4.UInt64(0),
                exceeded_count_for_alert=arc4.UInt64(0),
            )

        aggregate = self.aggregates[location_id].copy()

        # ── Encrypted exceedance count: both select arms always computed ─────
        exceeded = self._gt_scalar(decibel, UInt64(NOISE_THRESHOLD))
        increment = self._select(
            exceeded, self._trivial_encrypt(UInt64(1)), self._trivial_encrypt(UInt64(0))
        )
        aggregate.total_exceeded_count = self._add(aggregate.total_exceeded_count, increment)
        aggregate.total_duration = self._add(aggregate.total_duration, duration)

        # ── Plaintext bookkeeping ────────────────────────────────────────────
        total_reports = aggregate.total_reports.native + 1
        aggregate.total_reports = arc4.UInt64(total_reports)
        aggregate.last_updated = arc4.UInt64(timestamp)

        # Caller-attested flag; deliberately not derived from `exceeded`.
        if exceeds_threshold:
            pending = aggregate.exceeded_count_for_alert.native + 1
            if pending >= ALERT_THRESHOLD:
                aggregate.alert_count = arc4.UInt64(aggregate.alert_count.native + 1)
                aggregate.exceeded_count_for_alert = arc4.UInt64(0)
                arc4.emit(
                    NoiseAlert(
                        location_id=arc4.UInt64(location_id),
                        timestamp=arc4.UInt64(timestamp),
                        total_reports=arc4.UInt64(total_reports),
                    )
                )
            else:
                aggregate.exceeded_count_for_alert = arc4.UInt64(pending)

        # ── Fresh handles need fresh grants ──────────────────────────────────
        self._allow_this(aggregate.total_exceeded_count)
        self._allow(aggregate.total_exceeded_count, Txn.sender)
        self._allow_this(aggregate.total_duration)
        self._allow(aggregate.total_duration, Txn.sender)

        self.aggregates[location_id] = aggregate.copy()

    @subroutine
    def _load_aggregate(self, location_id: UInt64) -> AggregatedData:
        assert location_id in self.aggregates, "No data available"
        return self.aggregates[location_id].copy()

    # ─────────────────────────────────────────────────────────────────────
    # Internal: symbolic FHE execution
    # ─────────────────────────────────────────────────────────────────────

    @subroutine
    def _verify_input_proof(self, decibel: Handle, duration: Handle, proof: Bytes) -> None:
        message = Bytes(b"fhe-input") + Txn.sender.bytes + decibel.bytes + duration.bytes
        assert op.ed25519verify_bare(message, proof, self.input_verifier.bytes), "Invalid input proof"

    @subroutine
    def _from_external(self, handle: Handle, ciphertext: Bytes) -> Handle:
        bound = op.sha512_256(Bytes(b"input") + Txn.sender.bytes + ciphertext)
        assert handle.bytes == bound, "Ciphertext does not match handle"
        assert handle.bytes not in self.fhe_operations, "Input already consumed"
        self.input_ciphertexts[handle.bytes] = ciphertext
        self.fhe_operations[handle.bytes] = FheOperation(
            opcode=arc4.UInt8(OP_INPUT),
            result_type=arc4.UInt8(TYPE_EUINT16),
            operand_a=self._null_handle(),
            operand_b=self._null_handle(),
            operand_c=self._null_handle(),
            scalar=arc4.UInt64(0),
        )
        return handle.copy()

    @subroutine
    def _trivial_encrypt(self, value: UInt64) -> Handle:
        # Deterministic: the same constant always maps to the same handle.
        handle = Handle.from_bytes(
            op.sha512_256(Bytes(b"fhe-trivial") + op.itob(TYPE_EUINT16) + op.itob(value))
        )
        if handle.bytes not in self.fhe_operations:
            self.fhe_operations[handle.bytes] = FheOperation(
                opcode=arc4.UInt8(OP_TRIVIAL),
                result_type=arc4.UInt8(TYPE_EUINT16),
                operand_a=self._null_handle(),
                operand_b=self._null_handle(),
                operand_c=self._null_handle(),
                scalar=arc4.UInt64(value),
            )
        return handle

    @subroutine
    def _gt_scalar(self, lhs: Handle, scalar: UInt64) -> Handle:
        return self._record_operation(
            UInt64(OP_GT), UInt64(TYPE_EBOOL), lhs, self._null_handle(), self._null_handle(), scalar
        )

    @subroutine
    def _select(self, condition: Handle, if_true: Handle, if_false: Handle) -> Handle:
        return self._record_operation(
            UInt64(OP_SELECT), UInt64(TYPE_EUINT16), condition, if_true, if_false, UInt64(0)
        )

    @subroutine
    def _add(self, lhs: Handle, rhs: Handle) -> Handle:
        return self._record_operation(
            UInt64(OP_ADD), UInt64(TYPE_EUINT16), lhs, rhs, self._null_handle(), UInt64(0)
        )

    @subroutine
    def _record_operation(
        self,
        opcode: UInt64,
        result_type: UInt64,
        operand_a: Handle,
        operand_b: Handle,
        operand_c: Handle,
        scalar: UInt64,
    ) -> Handle:
        self.fhe_nonce += 1
        handle = Handle.from_bytes(
            op.sha512_256(
                Bytes(b"fhe-op")
                + op.itob(self.fhe_nonce)
                + op.itob(opcode)
                + operand_a.bytes
                + operand_b.bytes
                + operand_c.bytes
                + op.itob(scalar)
            )
        )
        self.fhe_operations[handle.bytes] = FheOperation(
            opcode=arc4.UInt8(opcode),
            result_type=arc4.UInt8(result_type),
            operand_a=operand_a.copy(),
            operand_b=operand_b.copy(),
            operand_c=operand_c.copy(),
            scalar=arc4.UInt64(scalar),
        )
        return handle

    @subroutine
    def _null_handle(self) -> Handle:
        return Handle.from_bytes(op.bzero(32))

    # ─────────────────────────────────────────────────────────────────────
    # Internal: ACL & roles
    # ─────────────────────────────────────────────────────────────────────

    @subroutine
    def _acl_key(self, handle: Handle, account: Account) -> Bytes:
        return op.sha512_256(handle.bytes + account.bytes)

    @subroutine
    def _allow(self, handle: Handle, account: Account) -> None:
        self.acl[self._acl_key(handle, account)] = arc4.Bool(True)

    @subroutine
    def _allow_this(self, handle: Handle) -> None:
        self._allow(handle, Global.current_application_address)

    @subroutine
    def _is_allowed(self, handle: Handle, account: Account) -> bool:
        return self._acl_key(handle, account) in self.acl

    @subroutine
    def _grant_location(self, location_id: UInt64, account: Account) -> None:
        aggregate = self._load_aggregate(location_id)
        self._allow(aggregate.total_exceeded_count, account)
        self._allow(aggregate.total_duration, account)

    @subroutine
    def _is_manager(self, account: Account) -> bool:
        return self.authorized_managers.get(account, default=arc4.Bool(False)).native

    @subroutine
    def _only_owner(self) -> None:
        assert Txn.sender == self.owner, "Only owner can call this function"
