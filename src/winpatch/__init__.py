import importlib.metadata

# Current software version, imported from pyproject metadata
__version__ = importlib.metadata.version("winpatch")

__all__ = ["__version__"]
