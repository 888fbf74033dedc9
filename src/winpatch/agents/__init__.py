from .api import UpdateAgent, UpdateSearcher
from .factory import AgentFactory
from .memory import MemoryAgent
from .powershell import PowerShellAgent

__all__ = [
    "AgentFactory",
    "MemoryAgent",
    "PowerShellAgent",
    "UpdateAgent",
    "UpdateSearcher",
]
