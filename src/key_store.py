"""
Persisted API key for the companion search service.
"""

import json
import logging
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

KEY_FILENAME = "api_key.json"


class KeyFile(BaseModel):
    """On-disk layout of the key file."""

    model_config = ConfigDict(populate_by_name=True)

    api_key: str = Field(default="", alias="apiKey")


def mask_key(key: str) -> str:
    """Reveal only the first and last four characters of ``key``."""
    return key[:4] + "*" * max(0, len(key) - 8) + key[max(4, len(key) - 4) :]


class KeyStore:
    """Reads the key from the first candidate file that holds one."""

    def __init__(self, user_data_dir: Path, install_dir: Path, working_dir: Path | None = None) -> None:
        self.user_data_dir = Path(user_data_dir)
        self.install_dir = Path(install_dir)
        self.working_dir = Path(working_dir) if working_dir is not None else Path.cwd()
        self.api_key = ""
        self.last_path: Path | None = None

    @property
    def candidates(self) -> list[Path]:
        """Read locations, highest priority first."""
        paths = []
        for directory in (self.user_data_dir, self.install_dir, self.working_dir):
            path = directory / KEY_FILENAME
            if path not in paths:
                paths.append(path)
        return paths

    def load(self) -> bool:
        """
        Re-read the key from disk.

        Unreadable or malformed candidates are skipped.

        Returns:
            True if a non-empty key was found
        """
        for candidate in self.candidates:
            try:
                raw = candidate.read_text(encoding="utf-8")
            except FileNotFoundError:
                continue
            except OSError as e:
                logger.debug(f"Could not read {candidate}: {e}")
                continue
            try:
                key = KeyFile.model_validate(json.loads(raw)).api_key
            except (json.JSONDecodeError, ValidationError) as e:
                logger.warning(f"Ignoring malformed key file {candidate}: {e}")
                continue
            if key:
                self.api_key = key
                self.last_path = candidate
                logger.info(f"API key loaded from {candidate}")
                return True

        self.api_key = ""
        return False

    def save(self, api_key: str) -> Path:
        """
        Write the key to the user data directory, or the install directory
        if that fails.

        Returns:
            Path the key was written to

        Raises:
            OSError: If neither location is writable
        """
        api_key = api_key.strip()
        payload = KeyFile(api_key=api_key).model_dump_json(by_alias=True, indent=2)

        primary = self.user_data_dir / KEY_FILENAME
        try:
            primary.parent.mkdir(parents=True, exist_ok=True)
            primary.write_text(payload, encoding="utf-8")
            written = primary
        except OSError as e:
            logger.warning(f"Failed to write API key to {primary}: {e}")
            written = self.install_dir / KEY_FILENAME
            written.write_text(payload, encoding="utf-8")

        self.api_key = api_key
        self.last_path = written
        logger.info(f"API key saved to {written}")
        return written

    def has_key_file(self) -> bool:
        """Whether any candidate file exists, even an empty one."""
        return any(path.exists() for path in self.candidates)

    def masked(self) -> str:
        """The current key with its middle replaced by ``*``."""
        return mask_key(self.api_key)

    def location(self) -> dict[str, object]:
        """Where the key was last read from or written to."""
        self.load()
        return {
            "hasApiKey": bool(self.api_key),
            "path": str(self.last_path) if self.last_path else None,
            "userDataPath": str(self.user_data_dir),
        }
