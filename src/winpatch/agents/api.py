import logging
from abc import ABC, abstractmethod
from typing import Optional

from winpatch.data import InstallResult, UpdateCandidate


class UpdateSearcher(ABC):
    """
    Abstract Base Class for Update Searcher

    A searcher is bound to an update source when it is created.
    """

    @abstractmethod
    def search(self, criteria: str) -> list[UpdateCandidate]:
        """
        Search for updates matching the given criteria.

        :param criteria: Windows Update search criteria, eg "IsInstalled=0"
        :return: List of matching updates.
        """
        raise NotImplementedError("search method is not implemented.")


class UpdateAgent(ABC):
    """
    Abstract Base Class for Update Agent

    Defines the narrow set of update service capabilities a patching
    run relies on, so the run can be driven against the real system
    or an in-memory stand-in.
    """

    def __init__(self) -> None:
        # Setup logging
        self.logger = logging.getLogger(__name__)

    @abstractmethod
    def remove_service(self, name: str) -> int:
        """
        Unregister every update service registered under ``name``.

        Absence of such a service is not an error.

        :return: Number of services removed.
        """
        raise NotImplementedError("remove_service method is not implemented.")

    @abstractmethod
    def add_scan_package_service(self, name: str, cab_path: str) -> str:
        """
        Register a transient update service backed by an offline catalog.

        :param name: Display name for the service
        :param cab_path: Path to the offline scan catalog
        :return: The service identifier.
        """
        raise NotImplementedError(
            "add_scan_package_service method is not implemented."
        )

    @abstractmethod
    def create_searcher(self, service_id: Optional[str] = None) -> UpdateSearcher:
        """
        Create an update searcher.

        :param service_id: Search this service exclusively, if given.
            Otherwise the system default source is used.
        """
        raise NotImplementedError("create_searcher method is not implemented.")

    @abstractmethod
    def download(self, updates: list[UpdateCandidate]) -> int:
        """
        Download a batch of updates.

        :return: Operation result code.
        """
        raise NotImplementedError("download method is not implemented.")

    @abstractmethod
    def install(self, updates: list[UpdateCandidate]) -> InstallResult:
        """
        Install a batch of previously downloaded updates, non-interactively.
        """
        raise NotImplementedError("install method is not implemented.")

    @abstractmethod
    def reboot_required(self) -> bool:
        """
        Whether the system reports a pending reboot.
        """
        raise NotImplementedError("reboot_required method is not implemented.")

    @abstractmethod
    def schedule_reboot(self, delay: int) -> None:
        """
        Schedule a forced reboot after ``delay`` seconds and return.
        """
        raise NotImplementedError("schedule_reboot method is not implemented.")
