import os
import threading
import time
from datetime import timedelta

import pytest
import requests

import couchbackup.core as core_module
from couchbackup.core import CouchBackup
from couchbackup.errors import FetchError, TransportError
from couchbackup.models import (
    ArtifactRecord,
    DatabaseEndpoint,
    Deadline,
    RunConfiguration,
    SweepReport,
    TunnelSettings,
)


class FakeHandle:
    def __init__(self):
        self.close_calls = 0

    def close(self):
        self.close_calls += 1


class FakeTransportService:
    def __init__(self, handle=None, error=None, on_acquire=None):
        self.handle = handle
        self.error = error
        self.on_acquire = on_acquire
        self.calls = 0

    def acquire(self, config, deadline=None):
        self.calls += 1
        if self.on_acquire:
            self.on_acquire()
        if self.error:
            raise self.error
        return "http://127.0.0.1:15984", self.handle


class FakeSnapshotService:
    def __init__(self, failing=(), interrupt=None, delays=None):
        self.failing = set(failing)
        self.interrupt = interrupt
        self.delays = delays or {}
        self.calls = []
        self._lock = threading.Lock()

    def fetch(self, base_url, database, on_progress=None, deadline=None):
        with self._lock:
            self.calls.append(database)
        time.sleep(self.delays.get(database, 0))
        if database == self.interrupt:
            raise KeyboardInterrupt()
        if database in self.failing:
            raise FetchError(database, f"Failed to back up database {database}: HTTP 500")
        if on_progress:
            on_progress(1024)
        return ArtifactRecord(
            database=database,
            path=f"/backups/{database}-2024-01-02T03:04:05.678Z.json",
            size_bytes=1024 * 1024,
            timestamp="2024-01-02T03:04:05.678Z",
        )


class FakeNotificationService:
    enabled = True

    def __init__(self):
        self.messages = []

    def notify(self, message):
        self.messages.append(message)
        return True


def build_config(tmp_path, **overrides):
    values = {
        "databases": ("alpha", "beta", "gamma"),
        "endpoint": DatabaseEndpoint("https", "couch.example.com", 6984, "admin", "secret"),
        "backup_dir": str(tmp_path / "backups"),
        "retention": timedelta(days=7),
        "tunnel": TunnelSettings(),
    }
    values.update(overrides)
    return RunConfiguration(**values)


def build_backup(tmp_path, snapshot=None, transport=None, **overrides):
    backup = CouchBackup(config=build_config(tmp_path, **overrides))
    backup.snapshot_service = snapshot or FakeSnapshotService()
    backup.transport_service = transport or FakeTransportService()
    backup.notification_service = FakeNotificationService()
    return backup


def test_successful_run_reports_databases_in_order(tmp_path):
    handle = FakeHandle()
    backup = build_backup(tmp_path, transport=FakeTransportService(handle=handle))

    assert backup.run() == 0

    assert backup.snapshot_service.calls == ["alpha", "beta", "gamma"]
    assert handle.close_calls == 1
    message = backup.notification_service.messages[0]
    assert message.splitlines() == [
        "CouchDB backup completed successfully.",
        "alpha: 1.00 MB",
        "beta: 1.00 MB",
        "gamma: 1.00 MB",
        "Total backup directory size: 0.00 MB",
    ]


def test_fail_fast_skips_remaining_databases(tmp_path):
    handle = FakeHandle()
    backup = build_backup(
        tmp_path,
        snapshot=FakeSnapshotService(failing={"beta"}),
        transport=FakeTransportService(handle=handle),
    )

    assert backup.run() == 1

    assert backup.snapshot_service.calls == ["alpha", "beta"]
    assert list(backup.result.failures) == ["beta"]
    assert backup.result.skipped == ["gamma"]
    assert handle.close_calls == 1
    message = backup.notification_service.messages[0]
    assert message.startswith("CouchDB backup failed for couch.example.com.")
    assert "Failed databases: beta" in message
    assert "Not attempted: gamma" in message


def test_continue_policy_attempts_every_database(tmp_path):
    backup = build_backup(
        tmp_path,
        snapshot=FakeSnapshotService(failing={"beta"}),
        failure_policy="continue",
    )

    assert backup.run() == 1

    assert backup.snapshot_service.calls == ["alpha", "beta", "gamma"]
    assert [artifact.database for artifact in backup.result.artifacts] == ["alpha", "gamma"]
    assert backup.result.skipped == []


def test_failed_fetch_phase_does_not_sweep(tmp_path):
    backup = build_backup(tmp_path, snapshot=FakeSnapshotService(failing={"alpha"}))
    swept = []
    backup.retention_service.sweep = lambda *args, **kwargs: swept.append(args)

    assert backup.run() == 1
    assert swept == []


def test_transport_failure_is_reported(tmp_path):
    transport = FakeTransportService(error=TransportError("SSH authentication to bastion failed."))
    backup = build_backup(tmp_path, transport=transport)

    assert backup.run() == 1

    assert backup.snapshot_service.calls == []
    assert backup.result.error == "SSH authentication to bastion failed."
    assert backup.notification_service.messages[0].startswith("CouchDB backup failed")


def test_concurrent_fetches_keep_configured_order(tmp_path):
    snapshot = FakeSnapshotService(delays={"alpha": 0.2, "beta": 0.1})
    backup = build_backup(tmp_path, snapshot=snapshot, max_workers=3)

    assert backup.run() == 0

    assert [artifact.database for artifact in backup.result.artifacts] == ["alpha", "beta", "gamma"]
    lines = backup.notification_service.messages[0].splitlines()
    assert lines[1:4] == ["alpha: 1.00 MB", "beta: 1.00 MB", "gamma: 1.00 MB"]


def test_run_deadline_still_closes_tunnel(tmp_path):
    clock = {"now": 0.0}
    handle = FakeHandle()

    def advance():
        clock["now"] += 60

    backup = build_backup(
        tmp_path,
        transport=FakeTransportService(handle=handle, on_acquire=advance),
        run_timeout=30,
    )
    backup.deadline = Deadline(30, clock=lambda: clock["now"])

    assert backup.run() == 1

    assert backup.snapshot_service.calls == []
    assert "deadline" in backup.result.error
    assert handle.close_calls == 1
    assert backup.notification_service.messages


def test_unusable_backup_directory_is_fatal(tmp_path):
    blocker = tmp_path / "not-a-dir"
    blocker.write_text("x", encoding="utf-8")
    transport = FakeTransportService()
    backup = build_backup(tmp_path, transport=transport, backup_dir=str(blocker / "backups"))

    assert backup.run() == 1

    assert transport.calls == 0
    assert "could not be created" in backup.result.error


def test_dry_run_touches_nothing(tmp_path):
    transport = FakeTransportService()
    backup = build_backup(tmp_path, transport=transport, dry_run=True)

    assert backup.run() == 0

    assert transport.calls == 0
    assert backup.snapshot_service.calls == []
    assert backup.notification_service.messages == []
    assert not (tmp_path / "backups").exists()


def test_keyboard_interrupt_closes_tunnel(tmp_path):
    handle = FakeHandle()
    backup = build_backup(
        tmp_path,
        snapshot=FakeSnapshotService(interrupt="alpha"),
        transport=FakeTransportService(handle=handle),
    )

    assert backup.run() == 1

    assert backup.result.error == "Operation cancelled by user."
    assert handle.close_calls == 1


class FakeCouchResponse:
    def __init__(self, body, status_code=200):
        self.body = body
        self.status_code = status_code

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def raise_for_status(self):
        return None

    def iter_content(self, chunk_size=1):
        yield self.body


def test_backup_writes_artifacts_prunes_old_and_notifies(tmp_path, monkeypatch):
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    stale = backup_dir / "alpha-2000-01-01T00:00:00.000Z.json"
    stale.write_text("{}", encoding="utf-8")
    eight_days_ago = time.time() - 8 * 24 * 60 * 60
    os.utime(stale, (eight_days_ago, eight_days_ago))

    requested = []
    posted = []

    def fake_get(url, **kwargs):
        requested.append(url)
        return FakeCouchResponse(b'{"total_rows":0,"offset":0,"rows":[]}')

    def fake_post(url, **kwargs):
        posted.append((url, kwargs["json"]["text"]))

        class Accepted:
            def raise_for_status(self):
                return None

        return Accepted()

    monkeypatch.setattr(core_module.requests, "get", fake_get)
    monkeypatch.setattr(core_module.requests, "post", fake_post)

    config = build_config(
        tmp_path,
        databases=("alpha", "beta"),
        endpoint=DatabaseEndpoint("http", "localhost", 5984, "admin", "secret"),
        webhook_url="https://hooks.example.com/services/T000",
    )
    backup = CouchBackup(config=config)

    assert backup.run() == 0

    assert requested == [
        "http://localhost:5984/alpha/_all_docs",
        "http://localhost:5984/beta/_all_docs",
    ]
    assert not stale.exists()
    names = sorted(os.listdir(backup_dir))
    assert len(names) == 2
    assert names[0].startswith("alpha-") and names[0].endswith("Z.json")
    assert names[1].startswith("beta-") and names[1].endswith("Z.json")

    url, text = posted[0]
    assert url == "https://hooks.example.com/services/T000"
    assert text.splitlines()[1:3] == ["alpha: 0.00 MB", "beta: 0.00 MB"]


def test_notification_failure_does_not_fail_the_run(tmp_path, monkeypatch):
    def broken_post(url, **kwargs):
        raise requests.ConnectionError("connection refused")

    monkeypatch.setattr(core_module.requests, "post", broken_post)

    backup = CouchBackup(
        config=build_config(tmp_path, webhook_url="https://hooks.example.com/services/T000")
    )
    backup.snapshot_service = FakeSnapshotService()
    backup.transport_service = FakeTransportService()

    assert backup.run() == 0
    assert backup.result.succeeded is True


@pytest.mark.parametrize("policy", ["fail-fast", "continue"])
def test_summary_header_never_claims_success_on_failure(tmp_path, policy):
    backup = build_backup(
        tmp_path,
        snapshot=FakeSnapshotService(failing={"alpha", "beta", "gamma"}),
        failure_policy=policy,
    )

    assert backup.run() == 1
    assert "completed successfully" not in backup.notification_service.messages[0]


def test_zero_retention_keeps_artifacts_of_the_current_run(tmp_path, monkeypatch):
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    stale = backup_dir / "alpha-2000-01-01T00:00:00.000Z.json"
    stale.write_text("{}", encoding="utf-8")
    os.utime(stale, (0, 0))

    monkeypatch.setattr(
        core_module.requests,
        "get",
        lambda url, **kwargs: FakeCouchResponse(b'{"total_rows":0,"offset":0,"rows":[]}'),
    )

    backup = CouchBackup(
        config=build_config(
            tmp_path,
            databases=("alpha", "beta"),
            endpoint=DatabaseEndpoint("http", "localhost", 5984, "admin", "secret"),
            retention=timedelta(0),
        )
    )
    backup.notification_service = FakeNotificationService()

    assert backup.run() == 0

    assert not stale.exists()
    assert len(backup.result.artifacts) == 2
    for artifact in backup.result.artifacts:
        assert os.path.exists(artifact.path)
    assert sorted(os.listdir(backup_dir)) == sorted(
        os.path.basename(artifact.path) for artifact in backup.result.artifacts
    )


def test_concurrent_fail_fast_skips_queued_databases(tmp_path):
    snapshot = FakeSnapshotService(failing={"alpha"}, delays={"beta": 0.3, "gamma": 0.3})
    handle = FakeHandle()
    backup = build_backup(
        tmp_path,
        snapshot=snapshot,
        transport=FakeTransportService(handle=handle),
        databases=("alpha", "beta", "gamma", "delta"),
        max_workers=2,
    )

    assert backup.run() == 1

    assert list(backup.result.failures) == ["alpha"]
    assert "delta" in backup.result.skipped
    assert "delta" not in snapshot.calls
    assert backup.result.skipped == [
        database for database in ("alpha", "beta", "gamma", "delta") if database not in snapshot.calls
    ]
    assert handle.close_calls == 1
    assert "Not attempted:" in backup.notification_service.messages[0]


def test_concurrent_unexpected_error_fails_the_run(tmp_path):
    class ExplodingSnapshotService(FakeSnapshotService):
        def fetch(self, base_url, database, on_progress=None, deadline=None):
            if database == "beta":
                raise RuntimeError("disk controller reset")
            return super().fetch(base_url, database, on_progress, deadline)

    handle = FakeHandle()
    backup = build_backup(
        tmp_path,
        snapshot=ExplodingSnapshotService(),
        transport=FakeTransportService(handle=handle),
        max_workers=2,
    )

    assert backup.run() == 1

    assert backup.result.error == "disk controller reset"
    assert handle.close_calls == 1


def test_sweep_failure_keeps_run_successful(tmp_path):
    backup = build_backup(tmp_path)

    def broken_sweep(*args, **kwargs):
        raise OSError("read-only file system")

    backup.retention_service.sweep = broken_sweep

    assert backup.run() == 0

    assert backup.result.succeeded is True
    message = backup.notification_service.messages[0]
    assert message.startswith("CouchDB backup completed successfully.")


def test_sweep_file_errors_keep_run_successful(tmp_path):
    backup = build_backup(tmp_path)
    backup.retention_service.sweep = lambda *args, **kwargs: SweepReport(
        failures=[(str(tmp_path / "backups" / "alpha-old.json"), "permission denied")]
    )

    assert backup.run() == 0
    assert backup.notification_service.messages[0].startswith(
        "CouchDB backup completed successfully."
    )
