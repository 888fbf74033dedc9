from typing import Optional

from winpatch.agents.api import UpdateAgent, UpdateSearcher
from winpatch.data import InstallResult, UpdateCandidate


class MemorySearcher(UpdateSearcher):
    """
    Searcher returning the updates held by a MemoryAgent.
    """

    def __init__(self, agent: "MemoryAgent", service_id: Optional[str]) -> None:
        self.agent = agent
        self.service_id = service_id

    def search(self, criteria: str) -> list[UpdateCandidate]:
        self.agent._record("search", criteria, self.service_id)
        return list(self.agent.updates)


class MemoryAgent(UpdateAgent):
    """
    In-memory Update Agent

    Holds a fixed set of available updates and records every call
    made against it, without touching the system. Failures can be
    injected per operation through ``fail_on``.
    """

    def __init__(
        self,
        updates: Optional[list[UpdateCandidate]] = None,
        reboot_pending: bool = False,
        install_result_code: int = 2,
        services: Optional[dict[str, str]] = None,
        fail_on: Optional[dict[str, Exception]] = None,
    ) -> None:
        """
        :param updates: Updates returned by every search
        :param reboot_pending: Initial state of the reboot-required signal
        :param install_result_code: Result code reported by install
        :param services: Registered services, as a mapping of id to name
        :param fail_on: Exceptions to raise, keyed by operation name
        """
        super().__init__()
        self.updates: list[UpdateCandidate] = list(updates or [])
        self.reboot_pending = reboot_pending
        self.install_result_code = install_result_code
        self.services: dict[str, str] = dict(services or {})
        self.fail_on: dict[str, Exception] = dict(fail_on or {})

        self.calls: list[tuple] = []
        self.downloaded: list[UpdateCandidate] = []
        self.installed: list[UpdateCandidate] = []
        self.reboots: list[int] = []

    def _record(self, operation: str, *args) -> None:
        self.calls.append((operation, *args))
        if operation in self.fail_on:
            raise self.fail_on[operation]

    @property
    def operations(self) -> list[str]:
        """
        Names of the operations called so far, in order.
        """
        return [call[0] for call in self.calls]

    def remove_service(self, name: str) -> int:
        self._record("remove_service", name)
        stale = [sid for sid, sname in self.services.items() if sname == name]
        for sid in stale:
            del self.services[sid]
        return len(stale)

    def add_scan_package_service(self, name: str, cab_path: str) -> str:
        self._record("add_scan_package_service", name, cab_path)
        service_id = f"memory-{len(self.services) + 1}"
        self.services[service_id] = name
        return service_id

    def create_searcher(self, service_id: Optional[str] = None) -> MemorySearcher:
        self._record("create_searcher", service_id)
        return MemorySearcher(self, service_id)

    def download(self, updates: list[UpdateCandidate]) -> int:
        self._record("download", list(updates))
        self.downloaded.extend(updates)
        return 2

    def install(self, updates: list[UpdateCandidate]) -> InstallResult:
        self._record("install", list(updates))
        self.installed.extend(updates)

        needs_reboot = any(u.reboot_required for u in updates)
        self.reboot_pending = self.reboot_pending or needs_reboot

        return InstallResult(
            result_code=self.install_result_code,
            reboot_required=needs_reboot,
            update_results={u.update_id: self.install_result_code for u in updates},
        )

    def reboot_required(self) -> bool:
        self._record("reboot_required")
        return self.reboot_pending

    def schedule_reboot(self, delay: int) -> None:
        self._record("schedule_reboot", delay)
        self.reboots.append(delay)
