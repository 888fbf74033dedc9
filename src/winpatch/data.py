# Data Types and Classes

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional


@dataclass(frozen=True)
class UpdateCandidate:
    """
    Data class to hold information about a single update that is
    not yet installed on the system, as reported by a search.
    """

    update_id: str
    title: str
    last_deployment_change_time: datetime
    description: str = ""
    reboot_required: bool = False
    severity: Optional[str] = None
    kb_articles: tuple[str, ...] = ()


@dataclass(frozen=True)
class InstallResult:
    """
    Data class to hold the outcome of a batch install operation.

    Result codes follow the Windows Update Agent OperationResultCode
    enumeration (2 is succeeded, 3 is succeeded with errors). Per-update
    codes are keyed by UpdateID.
    """

    result_code: int
    reboot_required: bool = False
    update_results: dict[str, int] = field(default_factory=dict)

    @property
    def succeeded(self) -> bool:
        return self.result_code in (2, 3)


@dataclass(frozen=True)
class RunOptions:
    """
    Named parameters for a single patching run.
    """

    update_cab: bool
    use_offline_scan: bool
    age_threshold: int
    can_reboot: bool
    offline_service_name: str
    patch_dir: str
    cab_download_uri: str
    free_space_min_mb: int
    reboot_delay_sec: int
    dry_run: bool = False


@dataclass()
class RunResult:
    """
    Data class to hold the outcome of a patching run.

    A failed run carries the error kind and message, everything
    else reflects how far the run got before it stopped.
    """

    found: int = 0
    eligible: list[UpdateCandidate] = field(default_factory=list)
    installed: bool = False
    reboot_required: bool = False
    reboot_scheduled: bool = False
    error_kind: Optional[str] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error_kind is None
