"""
Calibration profile storage with security controls.

Privacy & Security:
- Local-only storage (no network)
- Path traversal protection
- Schema validation
- Safe JSON serialization
"""

import json
from pathlib import Path
from typing import Optional

from petgaze.core.config import StorageConfig
from petgaze.storage.schema import CalibrationModel
from petgaze.utils.logger import get_logger

logger = get_logger(__name__)


class CalibrationStoreError(Exception):
    """Calibration storage errors."""

    pass


class CalibrationStore:
    """
    Local storage for the calibration profile.

    The profile is written on every successful calibration and loaded at
    startup; JSON floats round-trip exactly, so a reloaded model maps
    points identically.
    """

    def __init__(self, config: StorageConfig):
        """
        Initialize calibration store.

        Args:
            config: Storage configuration

        Raises:
            CalibrationStoreError: If storage path is invalid
        """
        self._config = config

        try:
            self._data_dir = config.data_dir.resolve(strict=False)
            self._data_dir.mkdir(parents=True, exist_ok=True)
        except (RuntimeError, OSError) as e:
            raise CalibrationStoreError(f"Invalid storage path: {e}")

        self._profile_path = self._data_dir / config.calibration_filename

        if not self._is_safe_path(self._profile_path):
            raise CalibrationStoreError("Path traversal detected")

        logger.info(f"CalibrationStore initialized: {self._profile_path}")

    @property
    def path(self) -> Path:
        return self._profile_path

    def save(self, model: CalibrationModel) -> bool:
        """
        Save the calibration profile.

        Raises:
            CalibrationStoreError: If validation or writing fails
        """
        temp_path = self._profile_path.with_suffix(".tmp")
        try:
            model.validate()

            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(model.to_dict(), f, indent=2, ensure_ascii=False)

            # Atomic replace
            temp_path.replace(self._profile_path)

            logger.info(f"Calibration profile saved: {len(model.observations)} observations")
            return True

        except (OSError, ValueError, TypeError) as e:
            error_msg = f"Failed to save calibration profile: {e}"
            logger.error(error_msg)
            raise CalibrationStoreError(error_msg) from e

    def load(self) -> Optional[CalibrationModel]:
        """
        Load the calibration profile.

        Returns:
            CalibrationModel if found and valid, None if no profile exists

        Raises:
            CalibrationStoreError: If the file is corrupt or invalid
        """
        if not self._profile_path.exists():
            logger.info("No calibration profile found")
            return None

        try:
            with open(self._profile_path, "r", encoding="utf-8") as f:
                data = json.load(f)

            model = CalibrationModel.from_dict(data)
            model.validate()

            logger.info(f"Calibration profile loaded: {len(model.observations)} observations")
            return model

        except json.JSONDecodeError as e:
            error_msg = f"Corrupted calibration profile: {e}"
            logger.error(error_msg)
            raise CalibrationStoreError(error_msg) from e

        except (ValueError, KeyError, TypeError) as e:
            error_msg = f"Invalid calibration profile: {e}"
            logger.error(error_msg)
            raise CalibrationStoreError(error_msg) from e

        except OSError as e:
            error_msg = f"Failed to read calibration profile: {e}"
            logger.error(error_msg)
            raise CalibrationStoreError(error_msg) from e

    def delete(self) -> bool:
        """
        Delete the calibration profile.

        Returns:
            True if deleted, False if the file didn't exist
        """
        try:
            if self._profile_path.exists():
                self._profile_path.unlink()
                logger.info("Calibration profile deleted")
                return True

            logger.info("No calibration profile to delete")
            return False

        except OSError as e:
            logger.error(f"Failed to delete calibration profile: {e}")
            raise CalibrationStoreError(f"Failed to delete calibration profile: {e}")

    def exists(self) -> bool:
        return self._profile_path.exists()

    def _is_safe_path(self, path: Path) -> bool:
        """True if the path stays inside the data directory."""
        try:
            resolved = path.resolve(strict=False)
            return resolved.parent == self._data_dir
        except (RuntimeError, OSError):
            return False
