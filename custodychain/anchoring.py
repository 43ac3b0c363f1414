"""
Anchor Status Model

An anchor is an external corroboration that a fingerprint existed at a point
in time: the fingerprint is submitted to an append-only ledger and the ledger
reference is kept beside the record.

Anchoring is strictly secondary to content integrity. A record whose anchor
never confirms is still a valid record; the anchor only adds evidence.

State machine:

    UNANCHORED --submit--> SUBMITTED --confirmed--> CONFIRMED
                           SUBMITTED --rejected--> UNANCHORED
                           SUBMITTED --pending---> UNCONFIRMED
    UNCONFIRMED --confirmed--> CONFIRMED
    UNCONFIRMED --pending----> UNCONFIRMED
    UNCONFIRMED --resubmit---> SUBMITTED

CONFIRMED is final. A gateway failure (AnchorUnavailable) is recorded on the
record but never moves it.

Gateways are tagged variants of one contract:

- SimulatedAnchorGateway: deterministic in-memory ledger, marked simulated
- DisabledAnchorGateway: anchoring switched off, nothing is ever accepted
- JsonRpcAnchorGateway: relay submission + JSON-RPC receipt lookup
"""

import hashlib
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from .canonicalization import format_datetime
from .errors import AnchorUnavailable, InvalidTransition


logger = logging.getLogger(__name__)


class AnchorState(str, Enum):
    UNANCHORED = "Unanchored"
    SUBMITTED = "Submitted"
    CONFIRMED = "Confirmed"
    UNCONFIRMED = "Unconfirmed"


_ALLOWED = {
    AnchorState.UNANCHORED: {AnchorState.SUBMITTED},
    AnchorState.SUBMITTED: {AnchorState.UNANCHORED, AnchorState.CONFIRMED, AnchorState.UNCONFIRMED},
    AnchorState.UNCONFIRMED: {AnchorState.CONFIRMED, AnchorState.UNCONFIRMED, AnchorState.SUBMITTED},
    AnchorState.CONFIRMED: set(),
}


@dataclass(frozen=True)
class SubmitReceipt:
    external_ref: Optional[str]
    accepted: bool
    block_number: Optional[int] = None


@dataclass(frozen=True)
class ConfirmationStatus:
    confirmed: bool
    block_number: Optional[int] = None
    confirmations: int = 0


def _now() -> str:
    return format_datetime(datetime.now(timezone.utc))


@dataclass
class AnchorRecord:
    """
    Anchor state for one fingerprinted subject (a batch or an event).

    The fingerprint is copied from the subject when the record is created
    and is never re-derived here.
    """
    subject_id: str
    subject_type: str
    fingerprint: str
    state: AnchorState = AnchorState.UNANCHORED
    external_ref: Optional[str] = None
    block_number: Optional[int] = None
    simulated: bool = False
    submitted_at: Optional[str] = None
    confirmed_at: Optional[str] = None
    attempts: int = 0
    last_error: Optional[str] = None

    def __post_init__(self):
        if not isinstance(self.state, AnchorState):
            self.state = AnchorState(self.state)

    def _move(self, target: AnchorState, action: str) -> None:
        if target not in _ALLOWED[self.state]:
            raise InvalidTransition(self.state.value, action, self.subject_id)
        self.state = target

    def copy(self) -> "AnchorRecord":
        return replace(self)

    def mark_submitted(self, simulated: bool = False) -> None:
        """Enter SUBMITTED, either for the first time or as a resubmission."""
        self._move(AnchorState.SUBMITTED, "submit")
        self.external_ref = None
        self.block_number = None
        self.simulated = simulated
        self.submitted_at = _now()
        self.last_error = None

    def record_submission(self, receipt: SubmitReceipt) -> None:
        """Apply the gateway's answer to a submission."""
        if self.state != AnchorState.SUBMITTED:
            raise InvalidTransition(self.state.value, "record submission", self.subject_id)
        if not receipt.accepted:
            self._move(AnchorState.UNANCHORED, "reject")
            self.external_ref = None
            return
        self.external_ref = receipt.external_ref
        self.block_number = receipt.block_number
        self.last_error = None

    def record_confirmation(self, status: ConfirmationStatus) -> None:
        if not self.external_ref:
            raise InvalidTransition(self.state.value, "confirm", self.subject_id)
        if status.confirmed:
            self._move(AnchorState.CONFIRMED, "confirm")
            self.block_number = status.block_number if status.block_number is not None else self.block_number
            self.confirmed_at = _now()
        else:
            self._move(AnchorState.UNCONFIRMED, "confirm")
        self.last_error = None

    def record_unavailable(self, error: Exception) -> None:
        """Gateway failures are remembered, never turned into a state change."""
        self.last_error = str(error)

    @property
    def is_confirmed(self) -> bool:
        return self.state == AnchorState.CONFIRMED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "subjectId": self.subject_id,
            "subjectType": self.subject_type,
            "fingerprint": self.fingerprint,
            "state": self.state.value,
            "externalRef": self.external_ref,
            "blockNumber": self.block_number,
            "simulated": self.simulated,
            "submittedAt": self.submitted_at,
            "confirmedAt": self.confirmed_at,
            "attempts": self.attempts,
            "lastError": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "AnchorRecord":
        return cls(
            subject_id=data["subjectId"],
            subject_type=data["subjectType"],
            fingerprint=data["fingerprint"],
            state=data.get("state", AnchorState.UNANCHORED.value),
            external_ref=data.get("externalRef"),
            block_number=data.get("blockNumber"),
            simulated=bool(data.get("simulated", False)),
            submitted_at=data.get("submittedAt"),
            confirmed_at=data.get("confirmedAt"),
            attempts=int(data.get("attempts", 0)),
            last_error=data.get("lastError"),
        )


# =============================================================================
# GATEWAYS
# =============================================================================

@dataclass(frozen=True)
class Network:
    key: str
    name: str
    chain_id: int
    rpc_url: str
    explorer_url: str


NETWORKS: Dict[str, Network] = {
    "zkevm-mainnet": Network(
        key="zkevm-mainnet",
        name="Polygon zkEVM Mainnet",
        chain_id=1101,
        rpc_url="https://zkevm-rpc.com",
        explorer_url="https://explorer.mainnet.zkevm-rpc.com",
    ),
    "zkevm-testnet": Network(
        key="zkevm-testnet",
        name="Polygon zkEVM Cardona Testnet",
        chain_id=2442,
        rpc_url="https://rpc.cardona.zkevm-rpc.com",
        explorer_url="https://explorer.cardona.zkevm-rpc.com",
    ),
    "amoy": Network(
        key="amoy",
        name="Polygon Amoy Testnet",
        chain_id=80002,
        rpc_url="https://rpc-amoy.polygon.technology",
        explorer_url="https://amoy.polygonscan.com",
    ),
}


class AnchorGateway(ABC):
    """
    Contract for an append-only external ledger.

    Implementations raise AnchorUnavailable for timeouts and transport
    failures, and never for a negative answer.
    """

    simulated: bool = False
    name: str = "gateway"

    @abstractmethod
    def submit(self, subject_id: str, fingerprint: str) -> SubmitReceipt:
        pass

    @abstractmethod
    def check_confirmation(self, external_ref: str) -> ConfirmationStatus:
        pass

    def explorer_url(self, external_ref: Optional[str]) -> Optional[str]:
        return None

    def describe(self) -> Dict[str, Any]:
        return {"gateway": self.name, "simulated": self.simulated}


class SimulatedAnchorGateway(AnchorGateway):
    """
    In-memory ledger for development and tests.

    References are deterministic: 0x + sha256(subject:fingerprint:sequence).
    Records anchored here carry simulated=True so they can never be mistaken
    for real ledger evidence.
    """

    simulated = True
    name = "simulated"

    def __init__(self, confirm: bool = True, start_block: int = 1000):
        self.confirm = confirm
        self.available = True
        self._start_block = start_block
        self._sequence = 0
        self._ledger: Dict[str, Tuple[str, str, int]] = {}
        self._lock = threading.Lock()

    def _check_available(self):
        if not self.available:
            raise AnchorUnavailable("simulated ledger is offline")

    def submit(self, subject_id: str, fingerprint: str) -> SubmitReceipt:
        self._check_available()
        with self._lock:
            self._sequence += 1
            seed = f"{subject_id}:{fingerprint}:{self._sequence}".encode("utf-8")
            ref = "0x" + hashlib.sha256(seed).hexdigest()
            block = self._start_block + self._sequence
            self._ledger[ref] = (subject_id, fingerprint, block)
        return SubmitReceipt(external_ref=ref, accepted=True, block_number=block)

    def check_confirmation(self, external_ref: str) -> ConfirmationStatus:
        self._check_available()
        with self._lock:
            entry = self._ledger.get(external_ref)
        if entry is None or not self.confirm:
            return ConfirmationStatus(confirmed=False)
        return ConfirmationStatus(confirmed=True, block_number=entry[2], confirmations=1)

    def lookup(self, external_ref: str) -> Optional[str]:
        """Return the fingerprint recorded under a reference, if any."""
        with self._lock:
            entry = self._ledger.get(external_ref)
        return entry[1] if entry else None


class DisabledAnchorGateway(AnchorGateway):
    """Anchoring switched off; used for offline verification."""

    name = "disabled"

    def submit(self, subject_id: str, fingerprint: str) -> SubmitReceipt:
        return SubmitReceipt(external_ref=None, accepted=False)

    def check_confirmation(self, external_ref: str) -> ConfirmationStatus:
        return ConfirmationStatus(confirmed=False)


class JsonRpcAnchorGateway(AnchorGateway):
    """
    Real ledger gateway.

    Submissions are POSTed to an anchor relay that owns the signing key and
    writes the fingerprint to the ledger contract; the relay answers with
    {"txHash": ..., "accepted": bool}. Confirmation is read straight from the
    network with eth_getTransactionReceipt.
    """

    name = "jsonrpc"

    def __init__(
        self,
        network: str = "zkevm-testnet",
        rpc_url: Optional[str] = None,
        relay_url: Optional[str] = None,
        timeout: float = 10.0,
        min_confirmations: int = 1,
        session=None,
    ):
        if network not in NETWORKS:
            raise ValueError(f"Unknown network {network!r}: must be one of {sorted(NETWORKS)}")
        self.network = NETWORKS[network]
        self.rpc_url = rpc_url or self.network.rpc_url
        self.relay_url = relay_url
        self.timeout = timeout
        self.min_confirmations = min_confirmations
        if session is None:
            import requests
            session = requests.Session()
        self._session = session
        self._rpc_id = 0
        self._lock = threading.Lock()

    def _post(self, url: str, body: Dict[str, Any]) -> Dict[str, Any]:
        import requests

        try:
            r = self._session.post(url, json=body, timeout=self.timeout)
            r.raise_for_status()
            return r.json()
        except requests.Timeout as e:
            raise AnchorUnavailable(f"{url} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise AnchorUnavailable(f"{url} failed: {e}") from e
        except ValueError as e:
            raise AnchorUnavailable(f"{url} returned invalid JSON") from e

    def _rpc(self, method: str, params: List[Any]) -> Any:
        with self._lock:
            self._rpc_id += 1
            rpc_id = self._rpc_id
        reply = self._post(self.rpc_url, {"jsonrpc": "2.0", "id": rpc_id, "method": method, "params": params})
        if reply.get("error"):
            raise AnchorUnavailable(f"{method}: {reply['error'].get('message', reply['error'])}")
        return reply.get("result")

    def submit(self, subject_id: str, fingerprint: str) -> SubmitReceipt:
        if not self.relay_url:
            return SubmitReceipt(external_ref=None, accepted=False)
        reply = self._post(self.relay_url, {
            "subjectId": subject_id,
            "fingerprint": "0x" + fingerprint,
            "chainId": self.network.chain_id,
        })
        tx_hash = reply.get("txHash")
        accepted = bool(reply.get("accepted", tx_hash is not None)) and tx_hash is not None
        return SubmitReceipt(external_ref=tx_hash if accepted else None, accepted=accepted)

    def check_confirmation(self, external_ref: str) -> ConfirmationStatus:
        receipt = self._rpc("eth_getTransactionReceipt", [external_ref])
        if not receipt or receipt.get("status") != "0x1":
            return ConfirmationStatus(confirmed=False)
        block_number = int(receipt["blockNumber"], 16)
        head = int(self._rpc("eth_blockNumber", []), 16)
        confirmations = max(0, head - block_number + 1)
        return ConfirmationStatus(
            confirmed=confirmations >= self.min_confirmations,
            block_number=block_number,
            confirmations=confirmations,
        )

    def explorer_url(self, external_ref: Optional[str]) -> Optional[str]:
        if not external_ref:
            return None
        return f"{self.network.explorer_url}/tx/{external_ref}"

    def describe(self) -> Dict[str, Any]:
        return {
            "gateway": self.name,
            "simulated": False,
            "network": self.network.name,
            "chainId": self.network.chain_id,
            "explorerUrl": self.network.explorer_url,
        }


# =============================================================================
# DISPATCH
# =============================================================================

class AnchorDispatcher:
    """
    Runs anchor submissions off the caller's path.

    Each gateway call is bounded by call_timeout. AnchorUnavailable is
    retried with exponential backoff up to max_attempts. On timeout,
    cancellation, exhausted retries or any other gateway error the record
    is left SUBMITTED and can be picked up later with refresh().

    on_result receives a copy of the record after every submission run.
    With immediate=True everything runs inline on the calling thread.
    """

    def __init__(
        self,
        gateway: AnchorGateway,
        on_result: Optional[Callable[[AnchorRecord], None]] = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        call_timeout: float = 10.0,
        workers: int = 4,
        immediate: bool = False,
        sleep: Callable[[float], None] = time.sleep,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.gateway = gateway
        self.on_result = on_result
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.call_timeout = call_timeout
        self.immediate = immediate
        self._sleep = sleep
        self._pending: Dict[str, Tuple[Future, threading.Event]] = {}
        self._lock = threading.Lock()
        self._closed = False
        if immediate:
            self._runs = None
            self._calls = None
        else:
            self._runs = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anchor")
            self._calls = ThreadPoolExecutor(max_workers=workers, thread_name_prefix="anchor-call")

    def _call(self, fn, *args):
        if self._calls is None:
            return fn(*args)
        future = self._calls.submit(fn, *args)
        try:
            return future.result(timeout=self.call_timeout)
        except FutureTimeout:
            future.cancel()
            raise AnchorUnavailable(f"{self.gateway.name} call timed out after {self.call_timeout}s")

    def _publish(self, record: AnchorRecord) -> None:
        if self.on_result is None:
            return
        try:
            self.on_result(record.copy())
        except Exception:
            logger.exception("Anchor result callback failed for %s", record.subject_id)

    def _run(self, record: AnchorRecord, cancelled: threading.Event) -> AnchorRecord:
        try:
            self._attempt(record, cancelled)
        except Exception as e:
            # A misbehaving gateway leaves the record where it was; refresh() can retry it.
            logger.exception("Anchor run for %s failed", record.subject_id)
            record.record_unavailable(e)
        finally:
            self._publish(record)
            with self._lock:
                self._pending.pop(record.subject_id, None)
        return record

    def _attempt(self, record: AnchorRecord, cancelled: threading.Event) -> None:
        for attempt in range(self.max_attempts):
            if cancelled.is_set():
                logger.info("Anchor submission for %s cancelled", record.subject_id)
                return
            record.attempts += 1
            try:
                receipt = self._call(self.gateway.submit, record.subject_id, record.fingerprint)
            except AnchorUnavailable as e:
                record.record_unavailable(e)
                logger.warning("Anchor submit for %s failed (attempt %d): %s", record.subject_id, attempt + 1, e)
                if not e.retryable or attempt + 1 >= self.max_attempts:
                    return
                self._sleep(self.backoff_seconds * (2 ** attempt))
                continue

            record.record_submission(receipt)
            if receipt.accepted and not cancelled.is_set():
                self._confirm(record)
            return

    def _confirm(self, record: AnchorRecord) -> None:
        try:
            status = self._call(self.gateway.check_confirmation, record.external_ref)
        except AnchorUnavailable as e:
            record.record_unavailable(e)
            return
        record.record_confirmation(status)

    def dispatch(self, record: AnchorRecord) -> Optional[Future]:
        """
        Submit a record for anchoring.

        The record is moved to SUBMITTED before this returns. A record that
        is already SUBMITTED without a reference (an earlier run stalled) is
        submitted again as is.

        Returns:
            The Future of the background run, or None in immediate mode
        """
        if record.state != AnchorState.SUBMITTED:
            record.mark_submitted(simulated=self.gateway.simulated)
        elif record.external_ref:
            raise InvalidTransition(record.state.value, "submit", record.subject_id)

        cancelled = threading.Event()
        if self._runs is None:
            self._run(record, cancelled)
            return None

        with self._lock:
            if self._closed:
                raise AnchorUnavailable("anchor dispatcher is shut down", retryable=False)
            future = self._runs.submit(self._run, record, cancelled)
            self._pending[record.subject_id] = (future, cancelled)
        return future

    def refresh(self, record: AnchorRecord) -> AnchorRecord:
        """
        Bring a record up to date synchronously.

        SUBMITTED/UNCONFIRMED records with a reference are re-checked;
        stalled or rejected records are submitted again.
        """
        if record.state == AnchorState.CONFIRMED:
            return record
        if record.external_ref:
            self._confirm(record)
            return record
        with self._lock:
            busy = record.subject_id in self._pending
        if busy:
            return record
        if record.state != AnchorState.SUBMITTED:
            record.mark_submitted(simulated=self.gateway.simulated)
        return self._run(record, threading.Event())

    def cancel(self, subject_id: str) -> bool:
        with self._lock:
            entry = self._pending.get(subject_id)
        if entry is None:
            return False
        future, cancelled = entry
        cancelled.set()
        if future.cancel():
            with self._lock:
                self._pending.pop(subject_id, None)
        return True

    def pending(self) -> List[str]:
        with self._lock:
            return list(self._pending)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight submissions. Returns True if all finished."""
        with self._lock:
            futures = [f for f, _ in self._pending.values()]
        if not futures:
            return True
        _, not_done = wait_futures(futures, timeout=timeout)
        return not not_done

    def shutdown(self, wait: bool = True, cancel_pending: bool = False) -> None:
        with self._lock:
            self._closed = True
            entries = list(self._pending.values())
        if cancel_pending:
            for future, cancelled in entries:
                cancelled.set()
                future.cancel()
        if self._runs is not None:
            self._runs.shutdown(wait=wait)
            self._calls.shutdown(wait=wait)
