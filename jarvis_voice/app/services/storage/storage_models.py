from pydantic import BaseModel, Field

from jarvis_voice.app.services.audio.calibrator import INVALID_RMS, CalibrationProfile


class StorageData(BaseModel):
    """Base class for all storage models with versioning support."""

    version: int = Field(default=1, description="Schema version for migrations")


class CalibrationData(StorageData):
    """Persisted calibration: a single scalar RMS value, -1.0 when invalid."""

    rms: float = Field(default=INVALID_RMS, description="Averaged ambient RMS metric")

    def to_profile(self) -> CalibrationProfile:
        if self.rms < 0:
            return CalibrationProfile.invalid()
        return CalibrationProfile(rms=self.rms, valid=True)

    @classmethod
    def from_profile(cls, profile: CalibrationProfile) -> "CalibrationData":
        return cls(rms=profile.rms if profile.valid else INVALID_RMS)
