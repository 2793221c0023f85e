"""End-to-end tests for the backup run controller.

Each test drives a full run against fake external tools and a real
temporary destination tree.
"""

import os
import shutil
import signal
import time
from unittest import mock

import pytest

from conftest import (
    DATABASES,
    FIRST_OF_MONTH,
    SUNDAY,
    FakeDumper,
    FakeMountProvider,
    InProcessArchiver,
    RecordingNotifier,
)
from hostbackup.backup.lock import LockStatus, RunLock
from hostbackup.backup.outcome import RunState, RunStatus, Severity
from hostbackup.backup.steps import DatabaseStep
from hostbackup.exceptions import FatalError
from hostbackup.logger import StructuredLogger


def tree(path):
    """Relative file paths under path"""
    if not path.exists():
        return set()
    return {str(p.relative_to(path)) for p in path.rglob("*") if p.is_file()}


def spy_disconnect(controller):
    spy = mock.Mock(wraps=controller.mount.disconnect)
    controller.mount.disconnect = spy
    return spy


class TestSuccessfulRun:
    """Fresh destination, plain weekday, every producer succeeds"""

    def test_exit_code_and_notification(self, make_context, make_controller):
        context = make_context()
        controller = make_controller(context)

        outcome = controller.run()

        assert outcome.exit_code == 0
        assert outcome.status is RunStatus.SUCCESS
        assert outcome.state is RunState.TERMINATED
        assert outcome.failures == []

        sent = controller.notifier.sent
        assert len(sent) == 1
        status, subject, body = sent[0]
        assert status is RunStatus.SUCCESS
        assert subject == "Backup SUCCESS: web1 - 2024-03-13"
        assert "completed successfully" in body
        assert str(context.log_file) in body

    def test_destination_layout(self, make_context, make_controller):
        context = make_context()
        make_controller(context).run()

        host_dir = context.mount_point / "web1"
        assert sorted(p.name for p in host_dir.iterdir()) == ["config", "data", "db"]

        config = tree(context.config_dir)
        for expected in (
            "etc-web1-2024-03-13.tgz",
            "home-web1-2024-03-13.tgz",
            "root-web1-2024-03-13.tgz",
            "usr-local-etc-web1-2024-03-13.tgz",
            "opt-web1-2024-03-13.tgz",
            "logs-web1-2024-03-13.tgz",
            "grub-web1-2024-03-13.cfg",
            "uname-web1-2024-03-13.txt",
            "df-web1-2024-03-13.txt",
        ):
            assert expected in config

        assert tree(context.db_dir / "daily") == {f"{db}-2024-03-13.sql.gz" for db in DATABASES}
        assert tree(context.db_dir / "weekly") == set()
        assert tree(context.db_dir / "monthly") == set()
        assert tree(context.data_dir) == {
            "www-web1-2024-03-13.tgz",
            "letsencrypt-web1-2024-03-13.tgz",
        }

    def test_unmounts_once_and_releases_lock(self, make_context, make_controller, lock_path):
        provider = FakeMountProvider()
        controller = make_controller(make_context(), provider=provider)
        disconnect = spy_disconnect(controller)

        controller.run()

        disconnect.assert_called_once()
        assert provider.calls.count("unmount") == 1
        assert not provider.connected
        with RunLock(lock_path) as lock:
            assert lock.status is LockStatus.ACQUIRED

    def test_log_files_written_once_lock_is_held(self, make_context, make_controller, tmp_path):
        run_log = tmp_path / "backup.log"
        error_log = tmp_path / "backup-error.log"
        context = make_context(log_file=run_log, error_log_file=error_log)
        logger = StructuredLogger(name="test-locked-run")

        make_controller(context, logger=logger).run()
        for handler in logger._logger.handlers:
            handler.flush()

        text = run_log.read_text()
        assert "Run lock acquired, backing up web1" in text
        assert "Stage verify finished" in text
        assert error_log.read_text() == ""

    def test_already_mounted_target_is_reused(self, make_context, make_controller):
        context = make_context()
        context.mount_point.mkdir(parents=True)
        provider = FakeMountProvider(connected=True)

        outcome = make_controller(context, provider=provider).run()

        assert outcome.exit_code == 0
        assert "mount" not in provider.calls
        assert "probe" not in provider.calls

    def test_housekeeping_warnings_do_not_affect_status(self, make_context, make_controller):
        controller = make_controller(
            make_context(), housekeeping=lambda: ["mysqldump not found on PATH"]
        )

        outcome = controller.run()

        assert outcome.status is RunStatus.SUCCESS
        assert outcome.warnings == ["housekeeping: mysqldump not found on PATH"]


class TestFatalFailures:
    def test_unreachable_target_creates_nothing(self, make_context, make_controller, lock_path):
        context = make_context()
        provider = FakeMountProvider(reachable=False)
        controller = make_controller(context, provider=provider)

        outcome = controller.run()

        assert outcome.exit_code == 1
        assert outcome.status is RunStatus.FAILED
        assert outcome.fatal_failure.step == "mount"
        assert outcome.fatal_failure.error.code == "MOUNT_FAILED_UNREACHABLE"
        assert not (context.mount_point / "web1").exists()
        assert provider.calls == ["probe"]
        assert controller.notifier.sent[0][0] is RunStatus.FAILED
        with RunLock(lock_path) as lock:
            assert lock.status is LockStatus.ACQUIRED

    def test_mount_error(self, make_context, make_controller):
        outcome = make_controller(
            make_context(), provider=FakeMountProvider(mount_fails=True)
        ).run()

        assert outcome.fatal_failure.error.code == "MOUNT_FAILED_MOUNT_ERROR"
        assert outcome.state is RunState.TERMINATED

    def test_not_writable_target_is_still_unmounted(self, make_context, make_controller):
        context = make_context()
        provider = FakeMountProvider(writable=False)

        outcome = make_controller(context, provider=provider).run()

        assert outcome.fatal_failure.error.code == "MOUNT_FAILED_NOT_WRITABLE"
        assert provider.calls[-1] == "unmount"
        assert not (context.mount_point / "web1").exists()

    def test_lock_contention_touches_nothing(self, make_context, make_controller, lock_path):
        context = make_context()
        provider = FakeMountProvider()
        controller = make_controller(context, provider=provider)
        disconnect = spy_disconnect(controller)

        with RunLock(lock_path) as other_run:
            assert other_run.status is LockStatus.ACQUIRED
            outcome = controller.run()

        assert outcome.exit_code == 1
        assert outcome.fatal_failure.error.code == "LOCK_HELD"
        assert outcome.fatal_failure.step == "lock"
        assert provider.calls == []
        disconnect.assert_not_called()
        assert not context.mount_point.exists()
        assert controller.notifier.sent[0][0] is RunStatus.FAILED

    def test_refused_run_leaves_log_files_untouched(
        self, make_context, make_controller, lock_path, tmp_path
    ):
        run_log = tmp_path / "logs" / "backup.log"
        error_log = tmp_path / "logs" / "backup-error.log"
        run_log.parent.mkdir()
        run_log.write_text("line from the running backup\n")
        context = make_context(log_file=run_log, error_log_file=error_log)
        controller = make_controller(context, logger=StructuredLogger(name="test-refused-run"))

        with RunLock(lock_path):
            outcome = controller.run()

        assert outcome.fatal_failure.error.code == "LOCK_HELD"
        assert run_log.read_text() == "line from the running backup\n"
        assert not error_log.exists()

    def test_missing_primary_config_aborts_remaining_stages(
        self, make_context, make_controller, source_root
    ):
        shutil.rmtree(source_root / "etc")
        context = make_context()
        dumper = FakeDumper()

        outcome = make_controller(context, dumper=dumper).run()

        assert outcome.fatal_failure.error.code == "PRIMARY_CONFIG_MISSING"
        assert outcome.fatal_failure.step == "config"
        assert outcome.state is RunState.TERMINATED
        assert dumper.dumped == []
        assert tree(context.db_dir) == set()


STAGE_FAULTS = {
    "config": lambda c: mock.patch.object(c.config_step, "run"),
    "databases": lambda c: mock.patch.object(c.database_step, "run"),
    "snapshots": lambda c: mock.patch.object(c.retention, "promote"),
    "data": lambda c: mock.patch.object(c.data_step, "run"),
    "verify": lambda c: mock.patch.object(c.verifier, "verify"),
}


class TestFaultInjection:
    """A failure in any stage still unmounts exactly once"""

    @pytest.mark.parametrize("stage", list(STAGE_FAULTS))
    @pytest.mark.parametrize("error", [
        FatalError(code="INJECTED", message="injected failure"),
        RuntimeError("unexpected"),
    ], ids=["fatal", "unexpected"])
    def test_stage_failure(self, stage, error, make_context, make_controller, lock_path):
        provider = FakeMountProvider()
        controller = make_controller(make_context(), provider=provider)
        disconnect = spy_disconnect(controller)

        with STAGE_FAULTS[stage](controller) as patched:
            patched.side_effect = error
            outcome = controller.run()

        disconnect.assert_called_once()
        assert provider.calls.count("unmount") == 1
        assert outcome.exit_code == 1
        assert outcome.fatal_failure.step == stage
        assert outcome.state is RunState.TERMINATED
        assert controller.notifier.sent[0][0] is RunStatus.FAILED
        with RunLock(lock_path) as lock:
            assert lock.status is LockStatus.ACQUIRED

    @pytest.mark.parametrize("status", [
        dict(reachable=False), dict(mount_fails=True), dict(writable=False),
    ], ids=["unreachable", "mount_error", "not_writable"])
    def test_mount_failure(self, status, make_context, make_controller):
        controller = make_controller(make_context(), provider=FakeMountProvider(**status))
        disconnect = spy_disconnect(controller)

        controller.run()

        disconnect.assert_called_once()

    def test_unexpected_error_logs_traceback(self, make_context, make_controller, log_output):
        controller = make_controller(make_context())

        with mock.patch.object(controller.data_step, "run", side_effect=KeyError("www")):
            outcome = controller.run()

        assert outcome.fatal_failure.error.code == "UNEXPECTED_ERROR"
        assert outcome.fatal_failure.error.details == {"stage": "data"}
        assert "Traceback" in log_output.getvalue()

    def test_interrupt_signal_takes_cleanup_path(self, make_context, make_controller):
        provider = FakeMountProvider()
        controller = make_controller(make_context(), provider=provider)
        disconnect = spy_disconnect(controller)
        previous = signal.getsignal(signal.SIGTERM)

        def interrupted(*args):
            os.kill(os.getpid(), signal.SIGTERM)

        with mock.patch.object(controller.data_step, "run", side_effect=interrupted):
            outcome = controller.run()

        assert outcome.fatal_failure.error.code == "INTERRUPTED"
        assert outcome.fatal_failure.step == "data"
        disconnect.assert_called_once()
        assert not provider.connected
        assert controller.notifier.sent[0][0] is RunStatus.FAILED
        assert signal.getsignal(signal.SIGTERM) == previous

    def test_interrupt_during_concurrent_dumps_waits_for_running_dumps(
        self, make_context, make_controller, logger
    ):
        events = []

        class RecordingProvider(FakeMountProvider):
            def unmount(self, mount_point, timeout):
                events.append("unmount")
                super().unmount(mount_point, timeout)

        class SignallingDumper(FakeDumper):
            def dump(self, database, destination, cancel=None):
                if database == "db0":
                    os.kill(os.getpid(), signal.SIGTERM)
                    time.sleep(0.2)
                super().dump(database, destination, cancel)
                events.append(f"dumped {database}")

        dumper = SignallingDumper()
        controller = make_controller(
            make_context(databases=tuple(f"db{i}" for i in range(6))),
            provider=RecordingProvider(),
            dumper=dumper,
            database_step=DatabaseStep(dumper, logger, max_workers=2),
        )

        outcome = controller.run()

        assert outcome.fatal_failure.error.code == "INTERRUPTED"
        assert outcome.fatal_failure.step == "databases"
        assert events.count("unmount") == 1
        assert events[-1] == "unmount"


class TestSoftErrors:
    def test_one_failed_dump_among_three(self, make_context, make_controller, logger, log_output):
        context = make_context()
        dumper = FakeDumper(fail=["service"])

        outcome = make_controller(context, dumper=dumper).run()

        assert tree(context.db_dir / "daily") == {
            "master-2024-03-13.sql.gz",
            "reports-2024-03-13.sql.gz",
        }
        assert outcome.exit_code == 1
        assert outcome.status is RunStatus.WARNING
        assert [(f.step, f.severity) for f in outcome.failures] == [("databases", Severity.SOFT)]
        assert log_output.getvalue().count("Failed to dump database") == 1

    def test_missing_optional_root_is_soft(self, make_context, make_controller, source_root):
        shutil.rmtree(source_root / "opt")

        outcome = make_controller(make_context()).run()

        assert outcome.status is RunStatus.WARNING
        assert outcome.state is RunState.TERMINATED
        assert [f.error.code for f in outcome.failures] == ["SOURCE_MISSING"]

    def test_corrupted_archive_reported_at_verification(self, make_context, make_controller):
        controller = make_controller(make_context(), archiver=InProcessArchiver(corrupt=["www"]))

        outcome = controller.run()

        assert outcome.verification_errors == 1
        assert outcome.exit_code == 1
        status, subject, body = controller.notifier.sent[0]
        assert status is RunStatus.WARNING
        assert subject.startswith("Backup WARNING")
        assert "completed with errors" in body
        assert "www-web1-2024-03-13.tgz" in body


class TestSnapshots:
    def test_plain_day_leaves_tiers_untouched(self, make_context, make_controller):
        context = make_context()
        weekly = context.db_dir / "weekly"
        weekly.mkdir(parents=True)
        old = weekly / "master-2024-03-10.sql.gz"
        old.write_bytes(b"old weekly snapshot")

        make_controller(context).run()

        assert tree(weekly) == {"master-2024-03-10.sql.gz"}
        assert old.read_bytes() == b"old weekly snapshot"
        assert tree(context.db_dir / "monthly") == set()

    def test_sunday_promotes_to_weekly(self, make_context, make_controller):
        context = make_context(now=SUNDAY)

        outcome = make_controller(context).run()

        assert outcome.exit_code == 0
        expected = {f"{db}-2024-03-17.sql.gz" for db in DATABASES}
        assert tree(context.db_dir / "weekly") == expected
        assert tree(context.db_dir / "daily") == expected
        assert tree(context.db_dir / "monthly") == set()

    def test_first_of_month_promotes_to_monthly(self, make_context, make_controller):
        context = make_context(now=FIRST_OF_MONTH)

        make_controller(context).run()

        assert tree(context.db_dir / "monthly") == {f"{db}-2024-04-01.sql.gz" for db in DATABASES}
        assert tree(context.db_dir / "weekly") == set()


class TestNotificationFailure:
    def test_undeliverable_notification_does_not_change_outcome(
        self, make_context, make_controller, logger
    ):
        notifier = RecordingNotifier(logger)
        notifier._deliver = mock.Mock(side_effect=OSError("connection refused"))

        outcome = make_controller(make_context(), notifier=notifier).run()

        assert outcome.exit_code == 0
        assert outcome.state is RunState.TERMINATED
