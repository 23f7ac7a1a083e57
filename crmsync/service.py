"""Wiring of the Drive sync components behind one façade."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, Optional

import db
from crmsync import deps_bootstrap
from crmsync.credential_store import CredentialStore
from crmsync.documents import CUSTOMERS, EXCEL_TEMPLATES, FORM_TEMPLATES
from crmsync.drainer import QueueDrainer
from crmsync.drive_api import DriveStorageClient, RemoteStorageClient
from crmsync.google_auth import AuthError, ConsentProvider, GoogleConsentProvider
from crmsync.repository import RecordRepository
from crmsync.resolver import (
    DATA_FILE_KEY,
    EXCEL_DATA_FILE_KEY,
    FORMS_DATA_FILE_KEY,
    CustomerFolder,
    RemoteResolver,
)
from crmsync.scheduler import Clock, Scheduler, SystemClock, ThreadScheduler, TimerHandle
from crmsync.sync_engine import DIRECTION_MERGE, DIRECTION_UPLOAD, SyncEngine, SyncStatus
from crmsync.token_manager import AuthState, TokenManager
from crmsync.write_queue import (
    ENTITY_CUSTOMER,
    ENTITY_EXCEL,
    ENTITY_FORM,
    BackoffController,
    DrainReport,
    QueueStatus,
    WriteQueue,
)
from settings import DriveSyncSettings

logger = logging.getLogger(__name__)

NoticeCallback = Callable[[str], None]


@dataclass(frozen=True)
class ServiceStatus:
    auth_state: AuthState
    customers: SyncStatus
    forms: SyncStatus
    excel: SyncStatus
    queue: QueueStatus

    @property
    def signed_in(self) -> bool:
        return self.auth_state is AuthState.SIGNED_IN


class CrmSyncService:
    """Build and own every sync component for one consultant.

    Interactive operations deliver a one-shot notice through
    ``notice_callback`` and re-raise. Background work only updates the
    engine and queue statuses.
    """

    def __init__(
        self,
        settings: DriveSyncSettings,
        *,
        storage=None,
        consent_provider: Optional[ConsentProvider] = None,
        remote: Optional[RemoteStorageClient] = None,
        scheduler: Optional[Scheduler] = None,
        clock: Optional[Clock] = None,
        library_probe=None,
        notice_callback: Optional[NoticeCallback] = None,
    ) -> None:
        if settings.db_path:
            db.set_database_path(Path(settings.db_path))
        self.settings = settings
        self._notice_callback = notice_callback
        self._clock = clock or SystemClock()
        self._scheduler = scheduler or ThreadScheduler()
        self._auto_sync_handle: Optional[TimerHandle] = None

        self.storage = storage or db.KeyValueStore()
        self.credentials = CredentialStore(self.storage, self._clock)
        consent = consent_provider or GoogleConsentProvider(
            client_id=settings.client_id,
            client_secret=settings.client_secret,
            client_secret_path=settings.client_secret_path,
        )
        self.auth = TokenManager(
            self.credentials,
            consent,
            scheduler=self._scheduler,
            clock=self._clock,
            library_probe=library_probe or deps_bootstrap.check_google_deps,
            notice_callback=self._notice,
            refresh_retry_limit=settings.refresh_retry_limit,
            refresh_retry_delay=settings.refresh_retry_delay_seconds,
            periodic_refresh_interval=settings.periodic_refresh_minutes * 60,
            health_check_interval=settings.health_check_minutes * 60,
            library_wait_timeout=settings.library_wait_timeout_seconds,
        )
        self.remote = remote or DriveStorageClient(self.auth.access_token)
        self.auth.set_health_check(self.remote.about)

        self.resolver = RemoteResolver(self.remote, self.storage)
        self.customers_engine = SyncEngine(
            CUSTOMERS, self.remote, self.resolver, self.resolver.data_file_id, DATA_FILE_KEY, clock=self._clock
        )
        self.forms_engine = SyncEngine(
            FORM_TEMPLATES,
            self.remote,
            self.resolver,
            self.resolver.forms_data_file_id,
            FORMS_DATA_FILE_KEY,
            clock=self._clock,
        )
        self.excel_engine = SyncEngine(
            EXCEL_TEMPLATES,
            self.remote,
            self.resolver,
            self.resolver.excel_data_file_id,
            EXCEL_DATA_FILE_KEY,
            clock=self._clock,
        )

        consultant_id = settings.consultant_id or None
        self.queue = WriteQueue(
            consultant_id,
            clock=self._clock,
            backoff=BackoffController(
                base=settings.backoff_base_seconds,
                maximum=settings.backoff_max_seconds,
                attempts=settings.queue_max_retries,
            ),
        )
        self.repository = RecordRepository(self.storage, self.queue, consultant_id)
        self.drainer = QueueDrainer(
            self.queue,
            self.auth,
            {
                ENTITY_CUSTOMER: self.customers_engine,
                ENTITY_FORM: self.forms_engine,
                ENTITY_EXCEL: self.excel_engine,
            },
            drain_interval=settings.drain_interval_seconds,
        )
        self.repository.add_listener(self.drainer.kick)
        self.auth.on_auth_change(self._on_auth_change)

    # ------------------------------------------------------------------
    # Notices and listeners
    # ------------------------------------------------------------------
    def _notice(self, message: str) -> None:
        if self._notice_callback is None:
            logger.warning("%s", message)
            return
        try:
            self._notice_callback(message)
        except Exception:
            logger.exception("Notice callback failed")

    def _on_auth_change(self, signed_in: bool) -> None:
        if signed_in:
            self.drainer.kick()
        else:
            self.resolver.reset()

    # ------------------------------------------------------------------
    # Authentication
    # ------------------------------------------------------------------
    def initialize(self) -> None:
        try:
            self.auth.initialize()
        except AuthError as exc:
            self._notice(f"Google Drive is unavailable: {exc}")
            raise

    def sign_in(self) -> None:
        try:
            self.auth.sign_in()
        except AuthError as exc:
            self._notice(f"Google sign-in failed: {exc}")
            raise

    def sign_out(self) -> None:
        self.auth.sign_out()

    # ------------------------------------------------------------------
    # Sync operations
    # ------------------------------------------------------------------
    def _drain_before_sync(self, *entity_types: str) -> None:
        if not self.auth.is_signed_in:
            return
        report = self.drainer.drain_once(entity_types)
        if report.attempted:
            logger.info("[Sync] Pushed %s queued change(s) before syncing", report.completed)

    def _owned_by_others(self, record: Any) -> bool:
        return not self.repository.owns(record)

    def sync_customers(self, direction: str = DIRECTION_MERGE) -> Optional[Any]:
        """Sync this consultant's customers and return them as stored locally."""

        self._drain_before_sync(ENTITY_CUSTOMER)
        local = self.repository.list_customers()
        try:
            result = self.customers_engine.sync(local, direction, preserve=self._owned_by_others)
        except Exception as exc:
            self._notice(f"Customer sync failed: {exc}")
            raise
        if result is None:
            return None
        if direction != DIRECTION_UPLOAD:
            self.repository.replace_customers(result)
        return self.repository.list_customers()

    def sync_templates(self, direction: str = DIRECTION_MERGE) -> Dict[str, Optional[Any]]:
        self._drain_before_sync(ENTITY_FORM, ENTITY_EXCEL)
        results: Dict[str, Optional[Any]] = {}
        try:
            forms = self.forms_engine.sync(self.repository.form_templates_map(), direction)
            if forms is not None and direction != DIRECTION_UPLOAD:
                self.repository.replace_form_templates(forms)
            results["forms"] = forms
            excel = self.excel_engine.sync(self.repository.excel_templates_map(), direction)
            if excel is not None and direction != DIRECTION_UPLOAD:
                self.repository.replace_excel_templates(excel)
            results["excel"] = excel
        except Exception as exc:
            self._notice(f"Template sync failed: {exc}")
            raise
        return results

    def prepare_customer_folder(self, customer_id: Any) -> CustomerFolder:
        """Create the customer's Drive folders and record them on the customer."""

        customer = self.repository.get_customer(customer_id)
        if customer is None:
            raise LookupError(f"Customer {customer_id!r} not found")
        try:
            folder = self.resolver.ensure_customer_folder(customer)
        except Exception as exc:
            self._notice(f"Could not create the customer's Drive folder: {exc}")
            raise
        self.repository.attach_customer_folder(customer_id, folder)
        return folder

    def drain_queue(self) -> DrainReport:
        return self.drainer.drain_once()

    def retry_failed(self) -> int:
        count = self.queue.retry_failed()
        if count:
            self.drainer.kick()
        return count

    # ------------------------------------------------------------------
    # Background work
    # ------------------------------------------------------------------
    def _auto_sync(self) -> None:
        if not self.auth.is_signed_in:
            return
        try:
            self._drain_before_sync(ENTITY_CUSTOMER)
            result = self.customers_engine.sync(self.repository.list_customers(), DIRECTION_MERGE)
        except Exception as exc:
            logger.warning("[Sync] Automatic sync failed: %s", exc)
            return
        if result is not None:
            self.repository.replace_customers(result)

    def start_background(self) -> None:
        self.drainer.start()
        minutes = self.settings.auto_sync_minutes
        if minutes > 0 and self._auto_sync_handle is None:
            self._auto_sync_handle = self._scheduler.call_every(minutes * 60, self._auto_sync)

    def stop_background(self) -> None:
        self.drainer.stop()
        if self._auto_sync_handle is not None:
            self._auto_sync_handle.cancel()
            self._auto_sync_handle = None

    def close(self) -> None:
        self.stop_background()
        self.auth.shutdown()

    def status(self) -> ServiceStatus:
        return ServiceStatus(
            auth_state=self.auth.state,
            customers=self.customers_engine.status,
            forms=self.forms_engine.status,
            excel=self.excel_engine.status,
            queue=self.queue.status(),
        )


__all__ = ["CrmSyncService", "ServiceStatus"]
