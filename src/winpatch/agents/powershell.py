import json
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

from invoke import Context

from winpatch.agents.api import UpdateAgent, UpdateSearcher
from winpatch.data import InstallResult, UpdateCandidate
from winpatch.errors import AgentError

# ServerSelection value for searching a specific service (ssOthers)
SERVER_SELECTION_OTHERS = 3

PREAMBLE = "$ErrorActionPreference = 'Stop'\n"

SCRIPT_NAME = "winpatch.ps1"

SEARCH_SCRIPT = """
$session = New-Object -ComObject Microsoft.Update.Session
$searcher = $session.CreateUpdateSearcher()
{selection}
$result = $searcher.Search({criteria})
"""

# Build a collection of the wanted updates out of $result
COLLECT_SCRIPT = """
$wanted = @({ids})
$coll = New-Object -ComObject Microsoft.Update.UpdateColl
foreach ($u in $result.Updates) {{
    if ($wanted -contains $u.Identity.UpdateID) {{
        if (-not $u.EulaAccepted) {{ $u.AcceptEula() }}
        [void]$coll.Add($u)
    }}
}}
"""


def quote(value: str) -> str:
    """
    Quote a value as a single-quoted PowerShell string literal.
    """
    return "'" + str(value).replace("'", "''") + "'"


def parse_timestamp(value: str) -> datetime:
    """
    Parse a sortable UTC timestamp as emitted by the search script.
    """
    stamp = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if stamp.tzinfo is None:
        stamp = stamp.replace(tzinfo=timezone.utc)
    return stamp


class PowerShellSearcher(UpdateSearcher):
    """
    Searcher driving Microsoft.Update.Session through PowerShell.
    """

    def __init__(self, agent: "PowerShellAgent", service_id: Optional[str]) -> None:
        self.agent = agent
        self.service_id = service_id

    def search(self, criteria: str) -> list[UpdateCandidate]:
        script = self.agent.search_script(criteria, self.service_id) + """
$items = @(foreach ($u in $result.Updates) {
    [pscustomobject]@{
        UpdateID = $u.Identity.UpdateID
        Title = $u.Title
        Description = $u.Description
        RebootRequired = [bool]$u.RebootRequired
        Severity = $u.MsrcSeverity
        LastDeploymentChangeTime = $u.LastDeploymentChangeTime.ToUniversalTime().ToString('s') + 'Z'
        KBArticleIDs = @($u.KBArticleIDs)
    }
})
ConvertTo-Json -InputObject $items -Depth 3 -Compress
"""
        items = self.agent.run_script(script) or []
        if isinstance(items, dict):
            items = [items]

        return [self.parse_update(item) for item in items]

    @staticmethod
    def parse_update(item: dict[str, Any]) -> UpdateCandidate:
        """
        Build an UpdateCandidate from one search result record.
        """
        return UpdateCandidate(
            update_id=item["UpdateID"],
            title=item.get("Title") or "",
            description=item.get("Description") or "",
            reboot_required=bool(item.get("RebootRequired")),
            severity=item.get("Severity") or None,
            last_deployment_change_time=parse_timestamp(
                item["LastDeploymentChangeTime"]
            ),
            kb_articles=tuple(f"KB{kb}" for kb in item.get("KBArticleIDs") or ()),
        )


class PowerShellAgent(UpdateAgent):
    """
    Windows Update Agent backend

    Drives the Windows Update Agent COM API through PowerShell script
    files, run with invoke. Each script prints its result as JSON.

    Every script runs in a fresh process, so COM objects do not
    survive between calls. The agent remembers the service the last
    searcher was created for, and download and install resolve
    updates again by UpdateID against that same source.
    """

    def __init__(
        self,
        cx: Optional[Context] = None,
        executable: str = "powershell.exe",
        script_dir: Optional[str] = None,
    ) -> None:
        """
        :param cx: invoke Context used to run commands (default is local)
        :param executable: PowerShell executable to run scripts with
        :param script_dir: Where script files are written (default is
                           the system temporary directory)
        """
        super().__init__()
        # An invoke Context with an empty config is falsy
        self.cx = cx if cx is not None else Context()
        self.executable = executable
        self.script_dir = script_dir
        self.service_id: Optional[str] = None
        self.logger.debug("Initializing Windows Update Agent backend")

    def run_script(self, script: str) -> Any:
        """
        Run a PowerShell script and decode its JSON output.

        The script is written to a temporary .ps1 file and run with
        -File, so its size is not bound by the command line limit.

        :return: The decoded output, None if the script printed nothing.
        :raises AgentError: If the script fails or prints invalid JSON.
        """
        with tempfile.TemporaryDirectory(
            prefix="winpatch-", dir=self.script_dir
        ) as tmpdir:
            path = Path(tmpdir) / SCRIPT_NAME
            # PowerShell 5.1 needs the BOM to read the file as UTF-8
            path.write_text(PREAMBLE + script, encoding="utf-8-sig")

            command = (
                f"{self.executable} -NoProfile -NonInteractive "
                f'-ExecutionPolicy Bypass -File "{path}"'
            )
            result = self.cx.run(command, hide=True, warn=True)

        if result.failed:
            raise AgentError(
                f"PowerShell exited with status {result.exited}: "
                f"{result.stderr.strip()}",
                stdout=result.stdout,
                stderr=result.stderr,
            )

        output = result.stdout.strip()
        if not output:
            return None

        try:
            return json.loads(output)
        except ValueError as e:
            raise AgentError(
                f"Unparseable output from PowerShell: {e}",
                stdout=result.stdout,
                stderr=result.stderr,
            ) from e

    def search_script(self, criteria: str, service_id: Optional[str]) -> str:
        """
        Script fragment leaving search results for ``criteria`` in $result.
        """
        selection = ""
        if service_id:
            selection = (
                f"$searcher.ServerSelection = {SERVER_SELECTION_OTHERS}\n"
                f"$searcher.ServiceID = {quote(service_id)}"
            )

        return SEARCH_SCRIPT.format(selection=selection, criteria=quote(criteria))

    def _collect_script(self, updates: list[UpdateCandidate]) -> str:
        ids = ", ".join(quote(u.update_id) for u in updates)
        return self.search_script("IsInstalled=0", self.service_id) + (
            COLLECT_SCRIPT.format(ids=ids)
        )

    def remove_service(self, name: str) -> int:
        script = f"""
$sm = New-Object -ComObject Microsoft.Update.ServiceManager
$removed = 0
foreach ($s in @($sm.Services)) {{
    if ($s.Name -eq {quote(name)}) {{
        $sm.RemoveService($s.ServiceID)
        $removed++
    }}
}}
ConvertTo-Json -InputObject $removed
"""
        removed = int(self.run_script(script) or 0)
        self.logger.debug("Removed %d services named %s", removed, name)
        return removed

    def add_scan_package_service(self, name: str, cab_path: str) -> str:
        script = f"""
$sm = New-Object -ComObject Microsoft.Update.ServiceManager
$service = $sm.AddScanPackageService({quote(name)}, {quote(cab_path)}, 1)
ConvertTo-Json -InputObject $service.ServiceID
"""
        service_id = self.run_script(script)
        if not service_id:
            raise AgentError(f"No service ID returned registering {name}")

        return str(service_id)

    def create_searcher(self, service_id: Optional[str] = None) -> PowerShellSearcher:
        self.service_id = service_id
        return PowerShellSearcher(self, service_id)

    def download(self, updates: list[UpdateCandidate]) -> int:
        script = self._collect_script(updates) + """
$downloader = $session.CreateUpdateDownloader()
$downloader.Updates = $coll
$outcome = $downloader.Download()
ConvertTo-Json -InputObject $outcome.ResultCode
"""
        return int(self.run_script(script))

    def install(self, updates: list[UpdateCandidate]) -> InstallResult:
        script = self._collect_script(updates) + """
$installer = $session.CreateUpdateInstaller()
$installer.ForceQuiet = $true
$installer.Updates = $coll
$outcome = $installer.Install()
$results = @(for ($i = 0; $i -lt $coll.Count; $i++) {
    [pscustomobject]@{
        UpdateID = $coll.Item($i).Identity.UpdateID
        ResultCode = $outcome.GetUpdateResult($i).ResultCode
    }
})
ConvertTo-Json -Compress -Depth 3 -InputObject ([pscustomobject]@{
    ResultCode = $outcome.ResultCode
    RebootRequired = [bool]$outcome.RebootRequired
    UpdateResults = $results
})
"""
        data = self.run_script(script) or {}
        results = data.get("UpdateResults") or []
        if isinstance(results, dict):
            results = [results]

        return InstallResult(
            result_code=int(data.get("ResultCode", 0)),
            reboot_required=bool(data.get("RebootRequired")),
            update_results={
                item["UpdateID"]: int(item["ResultCode"])
                for item in results
            },
        )

    def reboot_required(self) -> bool:
        script = """
$info = New-Object -ComObject Microsoft.Update.SystemInfo
ConvertTo-Json -InputObject ([bool]$info.RebootRequired)
"""
        return bool(self.run_script(script))

    def schedule_reboot(self, delay: int) -> None:
        command = f"shutdown.exe /r /f /t {int(delay)}"
        result = self.cx.run(command, hide=True, warn=True)

        if result.failed:
            raise AgentError(
                f"Failed to schedule reboot: {result.stderr.strip()}",
                stdout=result.stdout,
                stderr=result.stderr,
            )
