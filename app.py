# pardini_sync/app.py

import argparse
import os
import sys
import threading
import time
import uuid
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

# ---------------- CONFIG / CORE ----------------
from config import (
    LOG_DIR,
    LOG_FILE,
    Settings,
    get_readonly_conn,
    load_settings,
    utc_now_iso,
)

from logger import get_logger, get_audit_logger
from emailer import send_email

# ---------------- STATE DB ----------------
from db import (
    attachment_exists,
    close_run,
    init_state_db,
    mark_run,
    mark_run_item,
    record_attachment,
    rscalar,
)

from exceptions import ItemCancelled, ItemProcessingError, MappingNotFound
from models import (
    Artifact,
    ArtifactKind,
    AttachedDocument,
    Counter,
    CycleOutcome,
    CycleState,
    PendingItem,
    RemoteMapping,
    RemoteResult,
)

# ---------------- HPWS ----------------
from api import ProtocolClient

# ---------------- SERVICES ----------------
from services.reconciliation import ReconciliationMapper
from services.retrieval import YearFallbackPolicy, fetch_with_year_fallback
from services.hospital_store import HospitalStore
from services.document_sink import DocumentSink


log = get_logger("app")
audit = get_audit_logger()

LOG_FILE_PATH = os.path.join(LOG_DIR, LOG_FILE)

# upper bound between timeout sweeps while items are in flight
SWEEP_SECONDS = 1.0


class _ItemTicket:
    """
    One per dispatched item. Whoever settles first (the task or the timeout
    sweep) owns the counters for that item. The timeout clock starts when the
    task starts running, not when it is queued.
    """
    def __init__(self, item: PendingItem):
        self.item = item
        self.started_at: Optional[float] = None
        self._cancelled = threading.Event()
        self._settled = False
        self._lock = threading.Lock()

    def start(self) -> None:
        self.started_at = time.monotonic()

    def overdue(self, now: float, timeout: float) -> bool:
        return self.started_at is not None and now - self.started_at >= timeout

    def cancel(self) -> None:
        self._cancelled.set()

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def check(self) -> None:
        if self._cancelled.is_set():
            raise ItemCancelled(f"Order {self.item.local_order_code} cancelled (per-item timeout)")

    def settle(self) -> bool:
        with self._lock:
            if self._settled:
                return False
            self._settled = True
            return True


def _no_check() -> None:
    return None


class IntegrationWorker:
    def __init__(
        self,
        settings: Settings,
        client: ProtocolClient,
        mapper: ReconciliationMapper,
        store: HospitalStore,
        sink: DocumentSink,
        policy: Optional[YearFallbackPolicy] = None,
        notify: Callable[[List[str], str, str], None] = send_email,
    ):
        self.settings = settings
        self.client = client
        self.mapper = mapper
        self.store = store
        self.sink = sink
        self.policy = policy or YearFallbackPolicy(
            default_year=settings.default_year,
            prior_years=settings.fallback_years,
            prefer_mapped_year=settings.prefer_mapped_year,
        )
        self.notify = notify

        self.state = CycleState.IDLE
        self.last_outcome: Optional[CycleOutcome] = None

        self._processed = Counter()
        self._errors = Counter()
        self._deferred = Counter()

        self._cycle_lock = threading.Lock()
        self._hash_locks: Dict[str, list] = {}      # hash -> [lock, holders]
        self._hash_locks_guard = threading.Lock()

        self._pool = ThreadPoolExecutor(max_workers=max(settings.pool_size, 1), thread_name_prefix="hpws")

        init_state_db(settings.state_db_path)

    # ---------------- counters ----------------
    @property
    def processed_count(self) -> int:
        return self._processed.value

    @property
    def error_count(self) -> int:
        return self._errors.value

    @property
    def deferred_count(self) -> int:
        return self._deferred.value

    def shutdown(self) -> None:
        self._pool.shutdown(wait=True, cancel_futures=True)

    # ---------------- mapping ----------------
    def refresh_mapping(self) -> int:
        end = datetime.now()
        start = end - timedelta(hours=self.settings.period_window_hours)
        try:
            raw = self.client.fetch_period_results(start, end, self.settings.period_include_graphics)
            if raw is None:
                log.warning("getResultado returned nothing; keeping the current mapping")
                return 0
            return self.mapper.refresh(raw)
        except Exception as e:
            log.error(f"Mapping refresh failed; continuing with the current mapping: {e}")
            return 0

    # ---------------- per item ----------------
    @contextmanager
    def _hash_lock(self, content_hash: str):
        with self._hash_locks_guard:
            entry = self._hash_locks.get(content_hash)
            if entry is None:
                entry = self._hash_locks[content_hash] = [threading.Lock(), 0]
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._hash_locks_guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._hash_locks[content_hash]

    def _attach_artifact(
        self,
        kind: ArtifactKind,
        art: Artifact,
        seq: int,
        result: RemoteResult,
        mapping: RemoteMapping,
        attendance_id: int,
        patient_id: Optional[int],
        check: Callable[[], None],
    ) -> Optional[AttachedDocument]:
        with self._hash_lock(art.sha256):
            check()

            if attachment_exists(self.settings.state_db_path, art.sha256, kind.value) \
                    or self.store.hash_exists(art.sha256, kind):
                log.info(f"Order {mapping.local_order_code}: {kind.value} already attached (hash {art.sha256})")
                return None

            suffix = "" if seq == 1 else f"_{seq:02d}"
            if kind == ArtifactKind.PDF:
                description = f"Laudo Hermes Pardini - Pedido {result.key} [HASH:{art.sha256}]"
                file_name = f"LAUDO_{mapping.remote_order_code}{suffix}.PDF"
            else:
                description = f"Grafico Eletroforese - Pedido {result.key} [HASH:{art.sha256}]"
                file_name = f"GRAFICO_{mapping.remote_order_code}{suffix}.{art.extension.upper()}"

            doc_type = self.store.document_type_for(kind)
            doc_id = self.sink.attach(
                art.content,
                art.extension,
                attendance_id,
                patient_id,
                description,
                file_name,
                doc_type,
            )

            record_attachment(
                self.settings.state_db_path,
                content_hash=art.sha256,
                kind=kind.value,
                document_id=doc_id,
                local_order_code=mapping.local_order_code,
                remote_order_code=mapping.remote_order_code,
                order_year=result.order_year,
                attendance_id=attendance_id,
                patient_id=patient_id,
                file_name=file_name,
            )

        log.info(f"Order {mapping.local_order_code}: {kind.value} attached as CD_ARQUIVO_DOCUMENTO={doc_id}")
        return AttachedDocument(
            document_id=doc_id,
            attendance_id=attendance_id,
            patient_id=patient_id,
            content_hash=art.sha256,
            document_type=doc_type,
            description=description,
            file_name=file_name,
        )

    def process_item(self, item: PendingItem, check: Callable[[], None] = _no_check) -> List[AttachedDocument]:
        code = item.local_order_code

        mapping = self.mapper.lookup(code)
        if mapping is None:
            raise MappingNotFound(code)

        attendance_id = item.attendance_id
        if attendance_id is None:
            raise ItemProcessingError(f"Order {code} has no encounter (CD_ATENDIMENTO)")
        if not self.store.encounter_exists(attendance_id):
            raise ItemProcessingError(f"Encounter {attendance_id} does not exist in MV2000")

        patient_id = item.patient_id
        if patient_id is None:
            patient_id = self.store.patient_for_encounter(attendance_id)

        result = fetch_with_year_fallback(self.client, self.policy, mapping, check=check)

        attached: List[AttachedDocument] = []
        for seq, art in enumerate(result.pdf_artifacts, start=1):
            doc = self._attach_artifact(ArtifactKind.PDF, art, seq, result, mapping, attendance_id, patient_id, check)
            if doc:
                attached.append(doc)

        for seq, art in enumerate(result.graphic_artifacts, start=1):
            doc = self._attach_artifact(ArtifactKind.GRAFICO, art, seq, result, mapping, attendance_id, patient_id,
                                        check)
            if doc:
                attached.append(doc)

        return attached

    def _mark_item(self, run_id: str, code: str, status: str, step: str, message: Optional[str] = None) -> None:
        try:
            mark_run_item(self.settings.state_db_path, run_id, code, status, step, message)
        except Exception as e:
            log.error(f"Could not record {status} for order {code} in the state DB: {e}")

    def _run_item(self, run_id: str, ticket: _ItemTicket) -> None:
        code = ticket.item.local_order_code
        if ticket.cancelled:
            return
        ticket.start()

        try:
            attached = self.process_item(ticket.item, check=ticket.check)

        except MappingNotFound as e:
            if ticket.settle():
                self._deferred.increment()
                log.info(f"{e}; will retry next cycle")
                self._mark_item(run_id, code, "DEFERRED", "MAPPING")

        except ItemCancelled as e:
            # the timeout sweep already counted it
            log.warning(str(e))

        except Exception as e:
            if ticket.settle():
                self._errors.increment()
                log.error(f"Order {code} FAILED: {e}")
                audit.info(f"ERROR|{code}|{type(e).__name__}|{e}")
                self._mark_item(run_id, code, "FAILED", type(e).__name__, str(e))

        else:
            if ticket.settle():
                self._processed.increment()
                ids = ",".join(str(d.document_id) for d in attached) or "-"
                audit.info(f"SUCCESS|{code}|{len(attached)}|{ids}")
                self._mark_item(run_id, code, "SUCCESS", "ATTACHED", f"{len(attached)} document(s) attached")

    # ---------------- cycle ----------------
    def run_cycle(self) -> int:
        if not self._cycle_lock.acquire(blocking=False):
            log.warning("Previous cycle still running; skipping this trigger")
            return 0
        try:
            return self._run_cycle()
        finally:
            self.state = CycleState.IDLE
            self._cycle_lock.release()

    def _run_cycle(self) -> int:
        db_path = self.settings.state_db_path
        run_id = str(uuid.uuid4())
        outcome = CycleOutcome(run_id=run_id)

        self._processed.reset()
        self._errors.reset()
        self._deferred.reset()

        log.info(f"===== CYCLE START: {run_id} =====")
        try:
            mark_run(db_path, run_id, utc_now_iso(), self.settings.env, LOG_FILE_PATH)
        except Exception as e:
            log.error(f"Could not open run {run_id} in the state DB ({db_path}); skipping cycle: {e}")
            log.info(f"===== CYCLE END: {run_id} =====")
            return 0

        self.state = CycleState.REFRESHING_MAP
        mapped = self.refresh_mapping()

        self.state = CycleState.FETCHING_PENDING
        try:
            pending = self.store.list_pending(self.settings.batch_size)
        except Exception as e:
            log.error(f"Could not read pending orders from MV2000: {e}")
            self._finish(outcome, mapped, pending_error=str(e))
            return 0

        outcome.pending = len(pending)
        if not pending:
            log.info("No pending orders")
            self._finish(outcome, mapped)
            return 0

        self.state = CycleState.DISPATCHING
        tickets = {}
        for item in pending:
            ticket = _ItemTicket(item)
            tickets[self._pool.submit(self._run_item, run_id, ticket)] = ticket

        self.state = CycleState.AWAITING
        self._await_items(run_id, tickets)

        self.state = CycleState.DONE
        self._finish(outcome, mapped)
        return outcome.processed

    def _await_items(self, run_id: str, tickets: Dict) -> None:
        """
        Collect every task, giving each one item_timeout_seconds from the moment
        it starts. Items still queued behind the pool are not on the clock.
        """
        timeout = self.settings.item_timeout_seconds
        remaining = set(tickets)

        while remaining:
            _, remaining = wait(remaining, timeout=self._next_sweep(tickets, remaining, timeout),
                                return_when=FIRST_COMPLETED)

            now = time.monotonic()
            for fut in [f for f in remaining if tickets[f].overdue(now, timeout)]:
                remaining.discard(fut)
                self._time_out(run_id, tickets[fut], fut)

    @staticmethod
    def _next_sweep(tickets: Dict, remaining, timeout: float) -> float:
        now = time.monotonic()
        deadlines = [
            tickets[f].started_at + timeout - now
            for f in remaining
            if tickets[f].started_at is not None
        ]
        if not deadlines:
            return SWEEP_SECONDS
        return min(max(min(deadlines), 0.01), SWEEP_SECONDS)

    def _time_out(self, run_id: str, ticket: _ItemTicket, fut) -> None:
        ticket.cancel()
        fut.cancel()
        if not ticket.settle():
            return
        code = ticket.item.local_order_code
        self._errors.increment()
        log.error(f"Order {code} timed out after {self.settings.item_timeout_seconds}s")
        audit.info(f"TIMEOUT|{code}|{self.settings.item_timeout_seconds}s")
        self._mark_item(run_id, code, "FAILED", "TIMEOUT")

    def _finish(self, outcome: CycleOutcome, mapped: int, pending_error: Optional[str] = None) -> None:
        outcome.processed = self.processed_count
        outcome.errors = self.error_count
        outcome.deferred = self.deferred_count
        self.last_outcome = outcome

        try:
            close_run(
                self.settings.state_db_path,
                outcome.run_id,
                utc_now_iso(),
                outcome.pending,
                outcome.processed,
                outcome.errors,
                outcome.deferred,
                mapped,
            )
        except Exception as e:
            log.error(f"Could not close run {outcome.run_id} in the state DB: {e}")

        log.info(
            f"Cycle {outcome.run_id} finished | mapped={mapped}, pending={outcome.pending}, "
            f"processed={outcome.processed}, deferred={outcome.deferred}, errors={outcome.errors}"
        )
        log.info(f"===== CYCLE END: {outcome.run_id} =====")

        if pending_error or outcome.errors:
            self._notify_admins(outcome, pending_error)

    def _notify_admins(self, outcome: CycleOutcome, pending_error: Optional[str]) -> None:
        html = f"""
        <div style="font-family:Segoe UI,Arial,sans-serif; max-width:900px;">
          <h2 style="color:#b00020;">Hermes Pardini Sync - Cycle Errors</h2>
          <p><b>Run:</b> {outcome.run_id} ({self.settings.env})</p>
          {f"<p><b>Pending query failed:</b> {pending_error}</p>" if pending_error else ""}
          <p><b>Pending:</b> {outcome.pending} &nbsp; <b>Processed:</b> {outcome.processed}
             &nbsp; <b>Deferred:</b> {outcome.deferred} &nbsp; <b>Errors:</b> {outcome.errors}</p>
          <p style="color:#666;">Failed orders stay pending and are retried next cycle.</p>
        </div>
        """
        try:
            self.notify(
                self.settings.admin_emails,
                f"Pardini Sync {self.settings.env} - {outcome.errors} error(s) in cycle {outcome.run_id[:8]}",
                html,
            )
        except Exception as e:
            log.error(f"Admin notification failed: {e}")


# ------------------------------------------------------------
# Wiring
# ------------------------------------------------------------
def build_worker(settings: Settings) -> IntegrationWorker:
    return IntegrationWorker(
        settings=settings,
        client=ProtocolClient(settings),
        mapper=ReconciliationMapper(settings.state_db_path),
        store=HospitalStore(settings),
        sink=DocumentSink(settings),
    )


def run_once(settings: Optional[Settings] = None) -> int:
    settings = settings or load_settings()
    worker = build_worker(settings)
    try:
        return worker.run_cycle()
    finally:
        worker.shutdown()


def check_connectivity(settings: Settings) -> bool:
    ok = True

    try:
        conn = get_readonly_conn(settings)
        try:
            rscalar(conn, "SELECT 1 FROM DUAL")
        finally:
            conn.close()
        log.info(f"MV2000 reachable (DSN={settings.dsn})")
    except Exception as e:
        log.error(f"MV2000 not reachable (DSN={settings.dsn}): {e}")
        ok = False

    client = ProtocolClient(settings)
    if client.check_reachable():
        log.info(f"HPWS reachable ({settings.hpws_endpoint})")
    else:
        log.error(f"HPWS not reachable ({settings.hpws_endpoint})")
        ok = False

    return ok


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Hermes Pardini -> MV2000 result sync")
    parser.add_argument("--check", action="store_true", help="probe MV2000 and HPWS, then exit")
    parser.add_argument("--loop", action="store_true", help="run a cycle every RUN_EVERY_MINUTES")
    args = parser.parse_args(argv)

    settings = load_settings()

    if args.check:
        return 0 if check_connectivity(settings) else 1

    if args.loop:
        from scheduler import run_forever
        run_forever(settings)
        return 0

    processed = run_once(settings)
    print(f"Processed {processed} order(s)")
    return 0


if __name__ == "__main__":
    sys.exit(main())
