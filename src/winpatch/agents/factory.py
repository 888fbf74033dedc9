from winpatch.agents.api import UpdateAgent
from winpatch.agents.memory import MemoryAgent
from winpatch.agents.powershell import PowerShellAgent


class AgentFactory:
    """
    Factory class for creating update agent instances.
    """

    _REGISTRY: dict[str, type[UpdateAgent]] = {
        "wua": PowerShellAgent,
        "memory": MemoryAgent,
    }

    @staticmethod
    def create(name: str) -> UpdateAgent:
        """
        Create an update agent instance based on the provided name.

        :param name: Name of the agent backend (e.g., 'wua').
        :return: An instance of the specified agent.
        """
        if name not in AgentFactory._REGISTRY:
            raise ValueError(f"Unsupported update agent: {name}")

        return AgentFactory._REGISTRY[name]()

    @staticmethod
    def get_registry() -> dict[str, type[UpdateAgent]]:
        """
        Get a copy of the available agent backends.
        """
        return AgentFactory._REGISTRY.copy()
