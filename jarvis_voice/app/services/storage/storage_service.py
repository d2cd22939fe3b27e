import asyncio
import json
import logging
import os
import threading
import uuid
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from jarvis_voice.app.config.app_config import GlobalAppConfig
from jarvis_voice.app.services.audio.calibrator import CalibrationProfile
from jarvis_voice.app.services.storage.storage_models import CalibrationData

logger = logging.getLogger(__name__)


class CalibrationStore:
    """Persists the calibration profile as a small JSON document.

    Reads fall back to an invalid profile when the file is missing or unreadable.
    Writes go to a temp file that replaces the target atomically. File I/O runs on a
    dedicated single-thread executor so the event loop never blocks on disk.
    """

    def __init__(self, config: GlobalAppConfig, path: Optional[str] = None) -> None:
        self._path = Path(path or config.storage.calibration_path)
        self._lock = threading.RLock()
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="Storage")
        self._cached: Optional[CalibrationProfile] = None

        logger.debug(f"CalibrationStore initialized at {self._path}")

    @property
    def path(self) -> Path:
        return self._path

    async def load(self) -> CalibrationProfile:
        """Load the persisted profile, or an invalid profile when none is stored."""
        with self._lock:
            if self._cached is not None:
                return self._cached

        if not self._path.exists():
            logger.debug(f"File does not exist: {self._path}, no calibration stored")
            return CalibrationProfile.invalid()

        try:
            loop = asyncio.get_running_loop()
            data_dict = await loop.run_in_executor(self._executor, self._read_json, self._path)
            profile = CalibrationData.model_validate(data_dict).to_profile()
        except ValidationError as e:
            logger.error(f"Validation error reading calibration: {e}")
            return CalibrationProfile.invalid()
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Error reading calibration: {e}")
            return CalibrationProfile.invalid()

        with self._lock:
            self._cached = profile
        logger.info(f"Loaded calibration RMS: {profile.rms}")
        return profile

    async def save(self, profile: CalibrationProfile) -> bool:
        """Persist the profile. Returns True if the write succeeded."""
        data_dict = CalibrationData.from_profile(profile).model_dump(mode="json")

        loop = asyncio.get_running_loop()
        success = await loop.run_in_executor(self._executor, self._write_json, self._path, data_dict)

        if success:
            with self._lock:
                self._cached = profile
            logger.info(f"Saved calibration RMS: {profile.rms}")
        return success

    def _read_json(self, path: Path) -> Dict[str, Any]:
        with open(path, "r", encoding="utf-8") as f:
            return json.load(f)

    def _write_json(self, path: Path, data: Dict[str, Any]) -> bool:
        temp_path = path.with_suffix(f".tmp.{uuid.uuid4().hex}")
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(temp_path, "w", encoding="utf-8") as f:
                json.dump(data, f, indent=2)
            os.replace(temp_path, path)
            return True
        except OSError as e:
            logger.error(f"Error writing JSON to {path}: {e}")
            if temp_path.exists():
                try:
                    os.remove(temp_path)
                except OSError:
                    logger.debug(f"Could not remove temp file {temp_path}")
            return False

    def clear_cache(self) -> None:
        with self._lock:
            self._cached = None

    async def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.debug("CalibrationStore shutdown complete")
