import errno
import json
import logging
import sys
import tomllib
from collections.abc import Callable
from pathlib import Path
from typing import Any, BinaryIO

import yaml

from winpatch.data import RunOptions
from winpatch.errors import ConfigurationError

# Public location of the Windows Update offline scan catalog
DEFAULT_CAB_URI = (
    "https://catalog.s.download.windowsupdate.com/"
    "microsoftupdate/v6/wsusscan/wsusscn2.cab"
)

LOADERS: dict[str, Callable] = {
    "yaml": yaml.safe_load,
    "yml": yaml.safe_load,
    "toml": tomllib.load,
    "json": json.load,
}

# Configuration key to RunOptions field name
OPTION_FIELDS: dict[str, str] = {
    "UpdateCab": "update_cab",
    "UseOfflineScan": "use_offline_scan",
    "AgeThreshold": "age_threshold",
    "CanReboot": "can_reboot",
    "OfflineServiceName": "offline_service_name",
    "PatchDir": "patch_dir",
    "CabDownloadUri": "cab_download_uri",
    "FreeSpaceMinMB": "free_space_min_mb",
    "RebootDelaySec": "reboot_delay_sec",
    "DryRun": "dry_run",
}


def _default_patch_dir() -> str:
    if sys.platform == "win32":
        return "C:\\Patches"
    return str(Path.home() / "patches")


class Configuration(dict):
    """
    Hold configuration values for a patching run.

    Extends a native dict holding a flat mapping of option names to
    values. The reserved ``LogFile`` key selects the log destination,
    every other key is a named parameter for the orchestration run.
    """

    DEFAULTS: dict = {
        "UpdateCab": True,  # Refresh the offline catalog before scanning
        "UseOfflineScan": False,  # Scan against the offline catalog only
        "LogFile": None,  # Log to this file instead of the console
        "AgeThreshold": 14,  # Minimum update age, in days
        "CanReboot": False,  # Allow scheduling a reboot after install
        "OfflineServiceName": "Offline Sync Service",
        "PatchDir": _default_patch_dir(),  # Working directory for the catalog
        "CabDownloadUri": DEFAULT_CAB_URI,
        "FreeSpaceMinMB": 1024,  # Required free space on both volumes
        "RebootDelaySec": 300,  # Delay before a scheduled reboot
        "DryRun": False,  # Search and report only
    }

    # Declared type for each key, values are checked but never coerced
    TYPES: dict[str, type] = {
        "UpdateCab": bool,
        "UseOfflineScan": bool,
        "LogFile": str,
        "AgeThreshold": int,
        "CanReboot": bool,
        "OfflineServiceName": str,
        "PatchDir": str,
        "CabDownloadUri": str,
        "FreeSpaceMinMB": int,
        "RebootDelaySec": int,
        "DryRun": bool,
    }

    NULLABLE: frozenset[str] = frozenset({"LogFile"})

    def __init__(self) -> None:
        """
        Initialize the Configuration object with default values.
        """
        dict.__init__(self, self.DEFAULTS)
        self.logger = logging.getLogger(__name__)

    def from_path(self, filepath: str | Path, silent: bool = False) -> bool:
        """
        Populate the configuration from a file, picking the loader
        from the file extension. Unknown extensions are read as json.

        see `from_file()` for details.
        """
        ext = Path(filepath).suffix[1:].lower()
        loader = LOADERS.get(ext, json.load)
        return self.from_file(str(filepath), loader, silent=silent)

    def from_file(
        self,
        filepath: str,
        loader: Callable[[BinaryIO], Any],
        silent: bool = False,
    ) -> bool:
        """
        Populate the configuration structure from a file, with a
        specified loader function callable.

        The loader must be a reference to a callable that takes a
        file handle and returns a mapping of the data contained within.

        A file that cannot be read or parsed raises ConfigurationError.
        With ``silent``, a file that does not exist is not an error:
        nothing is loaded and False is returned.
        """
        try:
            with open(filepath, "rb") as f:
                data = loader(f)
        except OSError as e:
            if silent and e.errno == errno.ENOENT:
                return False

            raise ConfigurationError(
                f"Unable to load config file {filepath}: {e.strerror}"
            ) from e
        except (ValueError, yaml.YAMLError) as e:
            # JSONDecodeError and TOMLDecodeError are both ValueErrors
            raise ConfigurationError(f"Malformed config file {filepath}: {e}") from e

        if data is None:
            data = {}

        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Config file {filepath} must contain a mapping, "
                f"not {type(data).__name__}"
            )

        self.logger.debug("Loaded %d keys from %s", len(data), filepath)
        return self.update_from_mapping(data)

    def update_from_mapping(self, *mapping: dict, **kwargs: Any) -> bool:
        """
        Populate values like the native dict.update() method, checking
        known keys against their declared type.

        Unknown keys are kept as-is. They are rejected later, when the
        run options are built from the configuration.
        """
        mappings = []

        if len(mapping) == 1:
            if hasattr(mapping[0], "items"):
                mappings.append(mapping[0].items())
            else:
                mappings.append(mapping[0])
        elif len(mapping) > 1:
            raise TypeError(
                f"Config mapping expected at most 1 positional argument, "
                f"got {len(mapping)}"
            )

        mappings.append(kwargs.items())

        for mapping in mappings:
            for k, v in mapping:
                if k in self.TYPES:
                    self._check_type(k, v)
                self[k] = v

        return True

    def _check_type(self, key: str, value: Any) -> None:
        if value is None and key in self.NULLABLE:
            return

        expected = self.TYPES[key]

        # bool is an int subclass, but true is not a number of days
        if (expected is int and isinstance(value, bool)) or not isinstance(
            value, expected
        ):
            raise ConfigurationError(
                f"Configuration key {key} expects {expected.__name__}, "
                f"got {type(value).__name__}: {value!r}"
            )

    @property
    def log_file(self) -> str | None:
        """
        The configured log destination, or None for the console.
        """
        return self.get("LogFile") or None

    def run_options(self, dry_run: bool = False) -> RunOptions:
        """
        Build the named run parameters from the configuration.

        The ``LogFile`` key is not a run parameter and is left out.
        Any key that is not a known parameter is an error.

        :param dry_run: Force dry-run mode, regardless of configuration
        :return: RunOptions for the orchestrator
        """
        unknown = sorted(k for k in self if k not in self.TYPES)
        if unknown:
            raise ConfigurationError(
                f"Unrecognized configuration keys: {', '.join(unknown)}"
            )

        values = {field: self[key] for key, field in OPTION_FIELDS.items()}
        values["dry_run"] = values["dry_run"] or dry_run

        return RunOptions(**values)
