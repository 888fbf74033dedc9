"""
Patching run orchestration

A run is a straight sequence: clean up stale services, optionally
register an offline scan service, search, filter by age, download and
install, tear the service down again, then decide on a reboot. Any
failure stops the sequence; it is logged once and reported in the
returned RunResult.

A failure after the offline service is registered leaves that service
in place. It is removed by the cleanup step of the next run.
"""

import logging
from collections.abc import Callable
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Optional

from winpatch.agents.api import UpdateAgent
from winpatch.catalog import CATALOG_NAME, CatalogSync
from winpatch.data import RunOptions, RunResult, UpdateCandidate
from winpatch.errors import InstallationError, PatchError, PreconditionError

# Every update applicable to the system that is not installed yet
SEARCH_CRITERIA = "IsInstalled=0"

# Operation result codes for a usable download or install
RESULT_SUCCEEDED = 2
RESULT_SUCCEEDED_WITH_ERRORS = 3

RESULT_NAMES = {
    0: "NotStarted",
    1: "InProgress",
    2: "Succeeded",
    3: "SucceededWithErrors",
    4: "Failed",
    5: "Aborted",
}


def filter_candidates(
    candidates: list[UpdateCandidate],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> list[UpdateCandidate]:
    """
    Keep only updates published strictly before the age threshold.

    The threshold is taken as an absolute number of days, so 14 and
    -14 behave the same.

    :param candidates: Updates returned by a search
    :param threshold_days: Minimum age, in days
    :param now: Reference time (default is the current UTC time)
    :return: Eligible updates, in their original order
    """
    now = now or datetime.now(timezone.utc)
    cutoff = now - timedelta(days=abs(threshold_days))

    return [c for c in candidates if c.last_deployment_change_time < cutoff]


def describe(update: UpdateCandidate) -> str:
    """
    One line summary of an update, for the log.
    """
    kbs = f" ({', '.join(update.kb_articles)})" if update.kb_articles else ""
    return (
        f"{update.title}{kbs} "
        f"[severity: {update.severity or 'Unspecified'}, "
        f"changed: {update.last_deployment_change_time.date().isoformat()}, "
        f"reboot: {'yes' if update.reboot_required else 'no'}]"
    )


class PatchRun:
    """
    A single patching run against an update agent.
    """

    def __init__(
        self,
        options: RunOptions,
        agent: UpdateAgent,
        log: logging.Logger,
        catalog: Optional[CatalogSync] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        """
        :param options: Named parameters for the run
        :param agent: Update agent to drive
        :param log: Logger every line of the run is written to
        :param catalog: Catalog synchronizer (default is built from options)
        :param clock: Callable returning the current time, for age filtering
        """
        self.options = options
        self.agent = agent
        self.log = log
        self.clock = clock

        self.catalog = catalog or CatalogSync(
            options.cab_download_uri, self.cab_path, log=log
        )

    @property
    def cab_path(self) -> Path:
        return Path(self.options.patch_dir) / CATALOG_NAME

    def execute(self) -> RunResult:
        """
        Run the sequence, logging any failure instead of raising it.

        :return: RunResult with the error kind set if the run failed
        """
        result = RunResult()

        try:
            self.run(result)
        except PatchError as e:
            result.error_kind = e.kind
            result.error = e.message
            self.log.error("Patching failed (%s): %s", e.kind, e.message)
        except Exception as e:
            result.error_kind = "unexpected"
            result.error = str(e)
            self.log.exception("Patching failed: %s", e)

        return result

    def run(self, result: RunResult) -> RunResult:
        """
        Run the sequence, filling in ``result`` as steps complete.

        :raises PatchError: If any step fails
        """
        opts = self.options

        if opts.dry_run:
            self.log.info("Dry run: updates will be listed but not installed")

        self.cleanup_services()

        service_id = None
        if opts.use_offline_scan:
            service_id = self.setup_offline_scan()

        candidates = self.search(service_id)
        result.found = len(candidates)

        eligible = self.select_eligible(candidates)
        result.eligible = eligible

        if opts.dry_run:
            self.log.info("Dry run, skipping download and install")
        else:
            result.installed = self.download_install(eligible)

        self.cleanup_services()

        result.reboot_required, result.reboot_scheduled = self.check_reboot()

        self.log.info("Patching run complete")
        return result

    def cleanup_services(self) -> None:
        """
        Remove any registered offline scan service by name.
        """
        name = self.options.offline_service_name
        removed = self.agent.remove_service(name)

        if removed:
            self.log.info("Removed %d stale service(s) named '%s'", removed, name)

    def setup_offline_scan(self) -> str:
        """
        Refresh the offline catalog if configured, then register it.

        :return: Identifier of the registered service
        :raises PreconditionError: If no catalog is available
        """
        if self.options.update_cab:
            self.catalog.sync()

        cab_path = self.catalog.path
        if not cab_path.is_file():
            raise PreconditionError(
                f"Offline scan requested but no catalog found at {cab_path}"
            )

        service_id = self.agent.add_scan_package_service(
            self.options.offline_service_name, str(cab_path)
        )
        self.log.info(
            "Registered offline scan service '%s' (%s)",
            self.options.offline_service_name,
            service_id,
        )

        return service_id

    def search(self, service_id: Optional[str]) -> list[UpdateCandidate]:
        source = "offline catalog" if service_id else "default update source"
        self.log.info("Searching for updates using %s", source)

        searcher = self.agent.create_searcher(service_id)
        candidates = searcher.search(SEARCH_CRITERIA)

        self.log.info("Found %d updates not installed", len(candidates))
        for update in candidates:
            self.log.info("  %s", describe(update))

        return candidates

    def select_eligible(
        self, candidates: list[UpdateCandidate]
    ) -> list[UpdateCandidate]:
        threshold = abs(self.options.age_threshold)
        eligible = filter_candidates(candidates, threshold, self.clock())

        self.log.info(
            "%d updates older than %d days eligible for install",
            len(eligible),
            threshold,
        )
        for update in eligible:
            self.log.info("  %s", describe(update))

        return eligible

    def download_install(self, updates: list[UpdateCandidate]) -> bool:
        """
        Download then install a batch of updates.

        :return: True if anything was installed
        :raises InstallationError: If either step reports failure
        """
        if not updates:
            self.log.info("Nothing to do")
            return False

        self.log.info("Downloading %d updates", len(updates))
        code = self.agent.download(updates)
        if code not in (RESULT_SUCCEEDED, RESULT_SUCCEEDED_WITH_ERRORS):
            raise InstallationError(
                f"Download failed with result {RESULT_NAMES.get(code, code)}"
            )

        self.log.info("Installing %d updates", len(updates))
        outcome = self.agent.install(updates)

        for update in updates:
            code = outcome.update_results.get(update.update_id)
            if code is None:
                self.log.warning("  %s: not in install batch", update.title)
                continue

            self.log.info(
                "  %s: %s (reboot: %s)",
                update.title,
                RESULT_NAMES.get(code, code),
                "yes" if update.reboot_required else "no",
            )

        if outcome.reboot_required:
            self.log.info("Install reports a reboot is required")

        if not outcome.succeeded:
            raise InstallationError(
                "Install failed with result "
                f"{RESULT_NAMES.get(outcome.result_code, outcome.result_code)}"
            )

        self.log.info(
            "Install complete: %s",
            RESULT_NAMES.get(outcome.result_code, outcome.result_code),
        )
        return True

    def check_reboot(self) -> tuple[bool, bool]:
        """
        Schedule a reboot if one is pending and allowed.

        :return: Tuple of (reboot required, reboot scheduled)
        """
        required = self.agent.reboot_required()

        if not required:
            self.log.info("No reboot required")
            return False, False

        if self.options.dry_run or not self.options.can_reboot:
            self.log.info("Reboot required, but rebooting is not allowed")
            return True, False

        delay = self.options.reboot_delay_sec
        self.agent.schedule_reboot(delay)
        self.log.info("Reboot required, scheduled in %d seconds", delay)

        return True, True
