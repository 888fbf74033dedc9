import dataclasses
import logging
from datetime import datetime, timedelta, timezone

import pytest

from winpatch.agents import MemoryAgent
from winpatch.catalog import CatalogSync
from winpatch.data import InstallResult, RunOptions, RunResult, UpdateCandidate
from winpatch.errors import AgentError, NetworkError
from winpatch.orchestrator import PatchRun, describe, filter_candidates

NOW = datetime(2025, 6, 10, 12, 0, 0, tzinfo=timezone.utc)

SERVICE_NAME = "Offline Sync Service"


def make_update(
    update_id: str, age: timedelta, reboot: bool = False
) -> UpdateCandidate:
    return UpdateCandidate(
        update_id=update_id,
        title=f"Update {update_id}",
        description=f"Description of {update_id}",
        reboot_required=reboot,
        severity="Important",
        last_deployment_change_time=NOW - age,
        kb_articles=(f"KB{update_id}",),
    )


@pytest.fixture()
def options(tmp_path):
    return RunOptions(
        update_cab=True,
        use_offline_scan=False,
        age_threshold=14,
        can_reboot=False,
        offline_service_name=SERVICE_NAME,
        patch_dir=str(tmp_path),
        cab_download_uri="https://example.com/wsusscn2.cab",
        free_space_min_mb=100,
        reboot_delay_sec=120,
        dry_run=False,
    )


@pytest.fixture()
def updates():
    """
    One old update, one fresh update and one exactly at 14 days.
    """
    return [
        make_update("1001", timedelta(days=30)),
        make_update("1002", timedelta(days=2)),
        make_update("1003", timedelta(days=14)),
    ]


@pytest.fixture()
def mock_catalog(mocker, tmp_path):
    catalog = mocker.create_autospec(CatalogSync, instance=True)
    catalog.path = tmp_path / "wsusscn2.cab"
    catalog.sync.return_value = True
    return catalog


@pytest.fixture()
def log():
    return logging.getLogger("winpatch.test.orchestrator")


def make_run(options, agent, log, catalog=None, **changes) -> PatchRun:
    options = dataclasses.replace(options, **changes)
    return PatchRun(options, agent, log, catalog=catalog, clock=lambda: NOW)


class TestFilterCandidates:
    def test_keeps_older_than_threshold(self, updates):
        eligible = filter_candidates(updates, 14, NOW)

        assert [u.update_id for u in eligible] == ["1001"]

    def test_boundary_is_excluded(self):
        """
        An update exactly as old as the threshold is not eligible.
        """
        exact = make_update("1", timedelta(days=14))
        just_older = make_update("2", timedelta(days=14, microseconds=1))

        eligible = filter_candidates([exact, just_older], 14, NOW)

        assert eligible == [just_older]

    def test_negative_threshold_is_absolute(self, updates):
        """
        A threshold of -14 filters the same as 14.
        """
        assert filter_candidates(updates, -14, NOW) == filter_candidates(
            updates, 14, NOW
        )

    def test_zero_threshold(self):
        yesterday = make_update("1", timedelta(days=1))
        tomorrow = make_update("2", timedelta(days=-1))

        assert filter_candidates([yesterday, tomorrow], 0, NOW) == [yesterday]

    def test_preserves_order(self):
        batch = [make_update(str(i), timedelta(days=20 + i)) for i in range(5)]

        assert filter_candidates(batch, 14, NOW) == batch

    def test_defaults_to_current_time(self):
        ancient = UpdateCandidate(
            update_id="1",
            title="Ancient",
            last_deployment_change_time=datetime(2001, 1, 1, tzinfo=timezone.utc),
        )

        assert filter_candidates([ancient], 14) == [ancient]


class TestDescribe:
    def test_describe(self):
        update = make_update("5001", timedelta(days=30), reboot=True)

        assert describe(update) == (
            "Update 5001 (KB5001) [severity: Important, "
            "changed: 2025-05-11, reboot: yes]"
        )

    def test_describe_minimal(self):
        update = UpdateCandidate(
            update_id="1", title="Definition Update", last_deployment_change_time=NOW
        )

        assert describe(update) == (
            "Definition Update [severity: Unspecified, "
            "changed: 2025-06-10, reboot: no]"
        )


class TestPatchRun:
    def test_installs_eligible_updates(self, options, updates, log, caplog):
        """
        Ensure only eligible updates are downloaded and installed,
        in one batch each, with steps in order.
        """
        caplog.set_level(logging.INFO)
        agent = MemoryAgent(updates=updates)

        result = make_run(options, agent, log).execute()

        assert result.ok
        assert result.found == 3
        assert [u.update_id for u in result.eligible] == ["1001"]
        assert result.installed is True

        assert agent.downloaded == [updates[0]]
        assert agent.installed == [updates[0]]
        assert agent.operations == [
            "remove_service",
            "create_searcher",
            "search",
            "download",
            "install",
            "remove_service",
            "reboot_required",
        ]
        assert ("search", "IsInstalled=0", None) in agent.calls
        assert "Install complete: Succeeded" in caplog.text

    def test_dry_run_scenario(self, options, log, caplog):
        """
        AgeThreshold 0 in dry run: only yesterday's update is eligible,
        nothing is downloaded, both counts are logged.
        """
        caplog.set_level(logging.INFO)
        yesterday = make_update("1", timedelta(days=1))
        tomorrow = make_update("2", timedelta(days=-1))
        agent = MemoryAgent(updates=[yesterday, tomorrow])

        run = make_run(options, agent, log, age_threshold=0, dry_run=True)
        result = run.execute()

        assert result.ok
        assert result.found == 2
        assert result.eligible == [yesterday]
        assert result.installed is False
        assert "download" not in agent.operations
        assert "install" not in agent.operations

        assert "Found 2 updates not installed" in caplog.text
        assert "1 updates older than 0 days eligible for install" in caplog.text
        assert "Dry run, skipping download and install" in caplog.text

    def test_dry_run_never_reboots(self, options, updates, log):
        """
        Dry run never schedules a reboot, even when one is pending
        and rebooting is allowed.
        """
        agent = MemoryAgent(updates=updates, reboot_pending=True)

        run = make_run(options, agent, log, dry_run=True, can_reboot=True)
        result = run.execute()

        assert result.reboot_required is True
        assert result.reboot_scheduled is False
        assert agent.reboots == []
        assert "download" not in agent.operations

    def test_nothing_to_do(self, options, log, caplog):
        caplog.set_level(logging.INFO)
        agent = MemoryAgent(updates=[make_update("1", timedelta(days=1))])

        result = make_run(options, agent, log).execute()

        assert result.ok
        assert result.eligible == []
        assert result.installed is False
        assert "download" not in agent.operations
        assert "install" not in agent.operations
        assert "Nothing to do" in caplog.text

    def test_no_reboot_when_not_allowed(self, options, updates, log):
        agent = MemoryAgent(updates=updates, reboot_pending=True)

        result = make_run(options, agent, log, can_reboot=False).execute()

        assert result.reboot_required is True
        assert result.reboot_scheduled is False
        assert agent.reboots == []

    def test_reboot_scheduled(self, options, log):
        """
        An install needing a reboot schedules one after the delay.
        """
        agent = MemoryAgent(updates=[make_update("1", timedelta(days=30), True)])

        result = make_run(options, agent, log, can_reboot=True).execute()

        assert result.reboot_required is True
        assert result.reboot_scheduled is True
        assert agent.reboots == [120]
        assert agent.operations[-1] == "schedule_reboot"

    def test_no_reboot_pending(self, options, updates, log):
        agent = MemoryAgent(updates=updates)

        result = make_run(options, agent, log, can_reboot=True).execute()

        assert result.reboot_required is False
        assert result.reboot_scheduled is False
        assert agent.reboots == []

    def test_offline_scan(self, options, updates, log, mock_catalog):
        """
        Ensure the catalog is refreshed, registered, searched
        exclusively, then unregistered.
        """
        mock_catalog.path.write_bytes(b"catalog")
        agent = MemoryAgent(updates=updates)

        result = make_run(
            options, agent, log, catalog=mock_catalog, use_offline_scan=True
        ).execute()

        assert result.ok
        mock_catalog.sync.assert_called_once()
        assert (
            "add_scan_package_service",
            SERVICE_NAME,
            str(mock_catalog.path),
        ) in agent.calls
        assert ("create_searcher", "memory-1") in agent.calls
        assert ("search", "IsInstalled=0", "memory-1") in agent.calls
        assert agent.services == {}

    def test_offline_scan_without_cab_update(
        self, options, updates, log, mock_catalog
    ):
        mock_catalog.path.write_bytes(b"catalog")
        agent = MemoryAgent(updates=updates)

        result = make_run(
            options,
            agent,
            log,
            catalog=mock_catalog,
            use_offline_scan=True,
            update_cab=False,
        ).execute()

        assert result.ok
        mock_catalog.sync.assert_not_called()
        assert "add_scan_package_service" in agent.operations

    def test_offline_scan_missing_catalog(self, options, updates, log, mock_catalog):
        """
        Offline scan without a catalog on disk is fatal for the run.
        """
        agent = MemoryAgent(updates=updates)

        result = make_run(
            options, agent, log, catalog=mock_catalog, use_offline_scan=True
        ).execute()

        assert result.error_kind == "precondition"
        assert "no catalog found" in result.error
        assert "add_scan_package_service" not in agent.operations
        assert "search" not in agent.operations

    def test_catalog_download_failure(self, options, updates, log, mock_catalog):
        mock_catalog.sync.side_effect = NetworkError("Failed to download catalog")
        agent = MemoryAgent(updates=updates)

        result = make_run(
            options, agent, log, catalog=mock_catalog, use_offline_scan=True
        ).execute()

        assert result.error_kind == "network"
        assert "search" not in agent.operations

    def test_failure_leaves_service_registered(
        self, options, updates, log, mock_catalog, caplog
    ):
        """
        A failure after registration aborts the run without
        removing the offline service.
        """
        mock_catalog.path.write_bytes(b"catalog")
        agent = MemoryAgent(
            updates=updates, fail_on={"search": AgentError("search failed")}
        )

        result = make_run(
            options, agent, log, catalog=mock_catalog, use_offline_scan=True
        ).execute()

        assert result.error_kind == "agent"
        assert result.error == "search failed"
        assert agent.services == {"memory-1": SERVICE_NAME}
        assert agent.operations.count("remove_service") == 1
        assert "Patching failed (agent): search failed" in caplog.text

    def test_stale_service_removed_on_entry(self, options, updates, log, caplog):
        caplog.set_level(logging.INFO)
        agent = MemoryAgent(
            updates=updates,
            services={"stale": SERVICE_NAME, "other": "Windows Update"},
        )

        make_run(options, agent, log).execute()

        assert agent.services == {"other": "Windows Update"}
        assert "Removed 1 stale service(s)" in caplog.text

    def test_install_failure(self, options, updates, log, caplog):
        agent = MemoryAgent(updates=updates, install_result_code=4)

        result = make_run(options, agent, log, can_reboot=True).execute()

        assert result.error_kind == "installation"
        assert "Install failed with result Failed" in caplog.text
        assert "reboot_required" not in agent.operations

    def test_install_logs_per_update_results(self, options, log, caplog):
        caplog.set_level(logging.INFO)
        agent = MemoryAgent(updates=[make_update("1", timedelta(days=30), True)])

        make_run(options, agent, log).execute()

        assert "  Update 1: Succeeded (reboot: yes)" in caplog.text
        assert "Install reports a reboot is required" in caplog.text

    def test_install_results_matched_by_id(self, options, updates, log, mocker):
        """
        Per-update codes are matched by UpdateID, not by position.
        An update missing from the install batch is reported as such.
        """
        agent = MemoryAgent(updates=updates)
        mocker.patch.object(
            agent,
            "install",
            return_value=InstallResult(
                result_code=3, update_results={"other": 4, "1001": 2}
            ),
        )
        batch = [updates[0], updates[1]]
        mock_log = mocker.create_autospec(logging.Logger, instance=True)

        make_run(options, agent, mock_log).download_install(batch)

        mock_log.info.assert_any_call(
            "  %s: %s (reboot: %s)", "Update 1001", "Succeeded", "no"
        )
        mock_log.warning.assert_called_once_with(
            "  %s: not in install batch", "Update 1002"
        )

    def test_download_failure(self, options, updates, log, mocker):
        agent = MemoryAgent(updates=updates)
        mocker.patch.object(agent, "download", return_value=4)

        result = make_run(options, agent, log).execute()

        assert result.error_kind == "installation"
        assert "Download failed" in result.error
        assert "install" not in agent.operations

    def test_unexpected_error_is_logged(self, options, updates, log, caplog):
        """
        Anything else raised during the run is caught and logged too.
        """
        agent = MemoryAgent(
            updates=updates, fail_on={"install": RuntimeError("COM exploded")}
        )

        result = make_run(options, agent, log).execute()

        assert result.error_kind == "unexpected"
        assert result.error == "COM exploded"
        assert "Patching failed: COM exploded" in caplog.text

    def test_run_raises_without_wrapper(self, options, updates, log):
        agent = MemoryAgent(
            updates=updates, fail_on={"search": AgentError("search failed")}
        )
        run = make_run(options, agent, log)

        result = RunResult()

        with pytest.raises(AgentError):
            run.run(result)

        assert result.found == 0

    def test_default_catalog_location(self, options, log, tmp_path):
        run = PatchRun(options, MemoryAgent(), log)

        assert run.cab_path == tmp_path / "wsusscn2.cab"
        assert run.catalog.path == run.cab_path
        assert run.catalog.url == options.cab_download_uri
