import logging
import threading
from typing import Optional

import numpy as np
import sounddevice as sd

from jarvis_voice.app.config.app_config import AudioConfig
from jarvis_voice.app.services.errors import AudioReadError, DeviceError


class AudioSampler:
    """Pull-based microphone sampler delivering fixed-size 16-bit mono PCM blocks.

    Wraps a sounddevice input stream. ``open`` starts the stream, ``read_block`` blocks
    until one full block is available, and ``close`` stops and releases the device.
    ``close`` is idempotent and safe to call when ``open`` failed or never ran, so
    callers can release in a ``finally`` without tracking how far startup got.

    Usable as a context manager.

    Attributes:
        sample_rate: Capture sample rate in Hz (16000).
        block_size: Samples per block (50ms = 800 samples at 16kHz by default).
        device: Audio input device ID (None = system default).
    """

    def __init__(self, audio_config: AudioConfig) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self.sample_rate = audio_config.sample_rate
        self.block_size = audio_config.block_size
        self.device = audio_config.device

        self._stream: Optional[sd.InputStream] = None
        self._lock = threading.Lock()
        self._release_count = 0

    def open(self) -> "AudioSampler":
        """Initialize the capture device and enter recording state.

        Raises:
            DeviceError: The device could not be initialized or did not start recording.
        """
        with self._lock:
            if self._stream is not None:
                return self
            try:
                stream = sd.InputStream(
                    samplerate=self.sample_rate, blocksize=self.block_size, channels=1, dtype="int16", device=self.device
                )
            except (sd.PortAudioError, OSError, ValueError) as e:
                raise DeviceError(f"Audio capture init failed: {e}") from e

            self._stream = stream
            try:
                stream.start()
            except (sd.PortAudioError, OSError) as e:
                raise DeviceError(f"Audio capture failed to start recording: {e}") from e

            if not stream.active:
                raise DeviceError("Audio capture failed to start recording: stream inactive")

        self.logger.debug(f"Capture device opened: {self.sample_rate}Hz, block_size={self.block_size}")
        return self

    def read_block(self) -> np.ndarray:
        """Read one fixed-size block of int16 samples.

        Raises:
            AudioReadError: The device is not open, the read failed, or it returned no samples.
        """
        stream = self._stream
        if stream is None:
            raise AudioReadError("Capture device is not open")

        try:
            data, overflowed = stream.read(self.block_size)
        except (sd.PortAudioError, OSError, RuntimeError) as e:
            raise AudioReadError(f"Audio read failed: {e}") from e

        if overflowed:
            self.logger.debug("Input overflow while reading audio block")

        samples = np.asarray(data, dtype=np.int16).reshape(-1)
        if samples.size == 0:
            raise AudioReadError("Audio read returned no samples")
        return samples

    def close(self) -> None:
        """Stop and release the capture device. Idempotent."""
        with self._lock:
            stream = self._stream
            self._stream = None

        if stream is None:
            return

        try:
            if getattr(stream, "active", False):
                stream.stop()
            stream.close()
        except Exception as e:
            self.logger.error(f"Error releasing capture device: {e}", exc_info=True)
        finally:
            self._release_count += 1
            self.logger.debug("Capture device released")

    @property
    def is_open(self) -> bool:
        return self._stream is not None

    @property
    def release_count(self) -> int:
        return self._release_count

    def __enter__(self) -> "AudioSampler":
        return self.open()

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
