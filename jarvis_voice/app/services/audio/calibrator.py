import logging
import time
from typing import Callable, List, Optional

import numpy as np
from pydantic import BaseModel, ConfigDict

from jarvis_voice.app.config.app_config import CalibrationConfig
from jarvis_voice.app.services.audio.recorder import AudioSampler
from jarvis_voice.app.services.errors import DeviceError

logger = logging.getLogger(__name__)

INVALID_RMS = -1.0
PCM16_FULL_SCALE = 32768.0
RMS_SCALE = 1000.0


class CalibrationProfile(BaseModel):
    """Ambient loudness measurement.

    ``valid=False`` means no usable calibration exists, either because none was run
    or because the last run recorded no significant audio.
    """

    model_config = ConfigDict(frozen=True)

    rms: float = INVALID_RMS
    valid: bool = False

    @classmethod
    def invalid(cls) -> "CalibrationProfile":
        return cls(rms=INVALID_RMS, valid=False)


class CalibrationResult(BaseModel):
    """Outcome of one calibration run.

    Attributes:
        profile: Measured profile (invalid when nothing usable was recorded).
        blocks_read: Number of blocks read from the device.
        blocks_used: Number of blocks above the noise floor.
        cancelled: The run stopped because the cancel signal was raised.
        error: Capture failure text when the run aborted early.
    """

    profile: CalibrationProfile
    blocks_read: int = 0
    blocks_used: int = 0
    cancelled: bool = False
    error: Optional[str] = None


def compute_rms_metric(samples: np.ndarray) -> float:
    """Scaled RMS loudness of one block: sqrt(mean((s / 32768)^2)) * 1000."""
    if samples.size == 0:
        return 0.0
    normalized = samples.astype(np.float64) / PCM16_FULL_SCALE
    return float(np.sqrt(np.mean(normalized**2)) * RMS_SCALE)


class Calibrator:
    """Measures ambient noise by averaging the RMS metric of non-silent blocks.

    Reads blocks for at most ``duration_ms`` of wall-clock time, checking the cancel
    signal once per iteration. Blocks at or below the noise floor threshold are
    discarded. The capture device is released exactly once on every exit path.
    Capture failures do not propagate: they produce an invalid profile with the
    error text attached.
    """

    def __init__(self, config: CalibrationConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self._config = config
        self._clock = clock

    def calibrate(
        self,
        sampler: AudioSampler,
        duration_ms: Optional[int] = None,
        should_cancel: Optional[Callable[[], bool]] = None,
    ) -> CalibrationResult:
        duration_ms = self._config.duration_ms if duration_ms is None else duration_ms
        threshold = self._config.noise_floor_threshold
        should_cancel = should_cancel or (lambda: False)

        accumulated: List[float] = []
        blocks_read = 0
        cancelled = False

        try:
            sampler.open()
            start = self._clock()
            logger.debug(f"Calibration started: duration={duration_ms}ms, threshold={threshold}")

            while (self._clock() - start) * 1000.0 < duration_ms:
                if should_cancel():
                    cancelled = True
                    logger.info("Calibration cancelled")
                    break

                samples = sampler.read_block()
                blocks_read += 1

                rms = compute_rms_metric(samples)
                if rms > threshold:
                    accumulated.append(rms)

        except DeviceError as e:
            logger.error(f"Calibration failed: {e}")
            return CalibrationResult(profile=CalibrationProfile.invalid(), blocks_read=blocks_read, error=str(e))
        finally:
            sampler.close()

        if not accumulated:
            logger.warning("Calibration: No significant audio detected.")
            return CalibrationResult(profile=CalibrationProfile.invalid(), blocks_read=blocks_read, cancelled=cancelled)

        avg_rms = float(np.mean(accumulated))
        logger.info(f"Calibration complete. Avg RMS: {avg_rms:.2f} from {len(accumulated)} samples.")
        return CalibrationResult(
            profile=CalibrationProfile(rms=avg_rms, valid=True),
            blocks_read=blocks_read,
            blocks_used=len(accumulated),
            cancelled=cancelled,
        )
