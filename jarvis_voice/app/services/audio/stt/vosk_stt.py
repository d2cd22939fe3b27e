import gc
import logging
import os
import threading
import time
from typing import Callable, Optional

import vosk

from jarvis_voice.app.config.app_config import GlobalAppConfig
from jarvis_voice.app.events.core_events import (
    FinalResultEvent,
    PartialResultEvent,
    RecognitionEvent,
    RecognizerErrorEvent,
    RecognizerTimeoutEvent,
)
from jarvis_voice.app.services.audio.recorder import AudioSampler
from jarvis_voice.app.services.errors import ModelError, RecognizerError

logger = logging.getLogger(__name__)

RecognitionListener = Callable[[RecognitionEvent], None]


def load_vosk_model(model_path: str) -> vosk.Model:
    """Load a Vosk model from an unpacked model directory.

    Raises:
        ModelError: The directory does not exist or the model failed to load.
    """
    if not os.path.isdir(model_path):
        raise ModelError(f"Vosk model not found: {model_path}")
    try:
        model = vosk.Model(model_path)
    except Exception as e:
        raise ModelError(f"Failed to unpack/load the model: {e}") from e
    logger.info(f"Vosk model loaded from {model_path}")
    return model


class VoskRecognizer:
    """Streaming microphone recognizer session backed by a Kaldi recognizer.

    ``start`` opens the capture device and spawns a thread that feeds fixed-size
    blocks into the recognizer, delivering exactly one RecognitionEvent per produced
    result to the listener: a FinalResultEvent when an utterance completes, a
    PartialResultEvent when the interim hypothesis changes, a RecognizerTimeoutEvent
    when no utterance completed within ``timeout_seconds`` (listening continues), and
    a RecognizerErrorEvent on any runtime failure. Listener calls happen on the
    recognition thread.

    ``stop`` ends the thread, flushes the pending utterance as a final result and
    releases the capture device. ``shutdown`` additionally releases the engine. Both
    are idempotent.

    Attributes:
        _recognizer: Kaldi recognizer instance, None once released.
        _sampler: Capture device feeding the recognizer.
        _stop_event: Signals the recognition thread to finish.
    """

    def __init__(
        self,
        model: vosk.Model,
        sample_rate: int,
        config: GlobalAppConfig,
        sampler: Optional[AudioSampler] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Build a recognizer session from a loaded model.

        Raises:
            RecognizerError: The Kaldi recognizer could not be constructed.
        """
        self.logger = logging.getLogger(self.__class__.__name__)
        try:
            self._recognizer: Optional[vosk.KaldiRecognizer] = vosk.KaldiRecognizer(model, sample_rate)
        except Exception as e:
            raise RecognizerError(f"Failed to create recognizer: {e}") from e

        self._sample_rate = sample_rate
        self._sampler = sampler or AudioSampler(config.audio)
        self._timeout_seconds = config.recognizer.timeout_seconds
        self._join_timeout = config.recognizer.stop_join_timeout_seconds
        self._clock = clock

        self._listener: Optional[RecognitionListener] = None
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

        self.logger.debug(f"VoskRecognizer initialized: sample_rate={sample_rate}, timeout={self._timeout_seconds}")

    def start(self, listener: RecognitionListener) -> None:
        """Open the capture device and begin delivering events to ``listener``.

        Raises:
            DeviceError: The capture device could not be opened.
            RecognizerError: The session was already released.
        """
        with self._lock:
            if self._recognizer is None:
                raise RecognizerError("Recognizer has been released")
            if self._thread is not None:
                return

            self._sampler.open()
            self._listener = listener
            self._stop_event.clear()
            self._thread = threading.Thread(target=self._recognition_thread, daemon=True, name="VoskRecognizer")
            self._thread.start()

        self.logger.info("Recognition started")

    def _deliver(self, event: RecognitionEvent) -> None:
        listener = self._listener
        if listener is None:
            return
        try:
            listener(event)
        except Exception as e:
            self.logger.error(f"Recognition listener failed for {type(event).__name__}: {e}", exc_info=True)

    def _recognition_thread(self) -> None:
        recognizer = self._recognizer
        last_partial: Optional[str] = None
        last_final_at = self._clock()

        try:
            while not self._stop_event.is_set():
                samples = self._sampler.read_block()

                if recognizer.AcceptWaveform(samples.tobytes()):
                    self._deliver(FinalResultEvent(hypothesis=recognizer.Result()))
                    last_partial = None
                    last_final_at = self._clock()
                else:
                    partial = recognizer.PartialResult()
                    if partial != last_partial:
                        last_partial = partial
                        self._deliver(PartialResultEvent(hypothesis=partial))

                if self._timeout_seconds is not None and self._clock() - last_final_at >= self._timeout_seconds:
                    self._deliver(RecognizerTimeoutEvent())
                    last_final_at = self._clock()

            self._deliver(FinalResultEvent(hypothesis=recognizer.FinalResult()))

        except Exception as e:
            if self._stop_event.is_set():
                self.logger.debug(f"Recognition thread ended during stop: {e}")
            else:
                self.logger.error(f"Recognition error: {e}", exc_info=True)
                self._deliver(RecognizerErrorEvent(cause=str(e)))
        finally:
            self._sampler.close()

    def stop(self) -> None:
        """Stop recognition and release the capture device. Idempotent."""
        with self._lock:
            thread = self._thread
            self._thread = None

        if thread is None:
            self._sampler.close()
            return

        self._stop_event.set()
        if thread is not threading.current_thread():
            thread.join(timeout=self._join_timeout)
            if thread.is_alive():
                self.logger.error(f"Recognition thread did not terminate after {self._join_timeout}s timeout")

        self._sampler.close()
        self._listener = None
        self.logger.info("Recognition stopped")

    def shutdown(self) -> None:
        """Stop recognition and release the recognizer engine. Idempotent."""
        self.stop()

        with self._lock:
            if self._recognizer is None:
                return
            self._recognizer = None

        gc.collect()
        self.logger.debug("VoskRecognizer shutdown complete")

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._thread is not None

    @property
    def is_released(self) -> bool:
        with self._lock:
            return self._recognizer is None
