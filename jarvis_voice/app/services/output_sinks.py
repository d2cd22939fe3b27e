import logging
import os
import shutil
import subprocess
import threading
from typing import List, Optional, Protocol

from jarvis_voice.app.config.app_config import TtsConfig
from jarvis_voice.app.config.command_types import MediaKey

logger = logging.getLogger(__name__)


def _pyautogui():
    # Imported on first dispatch: pyautogui needs a display at import time.
    import pyautogui

    return pyautogui


MEDIA_KEY_NAMES = {
    MediaKey.PLAY_PAUSE: "playpause",
    MediaKey.NEXT: "nexttrack",
    MediaKey.PREVIOUS: "prevtrack",
}


class SpeechSink(Protocol):
    """Text-to-speech output. ``speak`` interrupts any in-flight utterance."""

    def speak(self, text: str) -> None: ...

    def stop(self) -> None: ...

    @property
    def is_speaking(self) -> bool: ...


class LoggingSpeechSink:
    """Speech sink that logs utterances instead of voicing them.

    Nothing is ever audible, so an utterance is finished as soon as it is logged and
    ``is_speaking`` is always False. ``history`` keeps every utterance in order.
    """

    def __init__(self) -> None:
        self.history: List[str] = []

    def speak(self, text: str) -> None:
        if not text:
            logger.warning("Attempted to speak empty text.")
            return
        self.history.append(text)
        logger.info(f"TTS speaking: {text!r}")

    def stop(self) -> None:
        logger.debug("TTS stop requested, nothing playing")

    @property
    def is_speaking(self) -> bool:
        return False


class PiperSpeechSink:
    """Speaks responses with the Piper TTS binary piped into a WAV player.

    Each utterance runs as ``piper -m <model> -f -`` feeding ``aplay -q [-D device]``.
    ``speak`` flushes the current utterance by terminating both processes before
    starting the next, and returns without waiting for playback. ``is_speaking``
    follows the player process.
    """

    def __init__(self, config: TtsConfig) -> None:
        self.logger = logging.getLogger(self.__class__.__name__)
        self._config = config
        self._lock = threading.Lock()
        self._synth: Optional[subprocess.Popen] = None
        self._player: Optional[subprocess.Popen] = None

    def _synth_command(self) -> List[str]:
        return [self._config.bin_path, "-m", str(self._config.model_path), "-f", "-"]

    def _player_command(self) -> List[str]:
        command = [self._config.playback, "-q"]
        if self._config.playback_device:
            command += ["-D", self._config.playback_device]
        return command

    def speak(self, text: str) -> None:
        text = text.strip() if text else ""
        if not text:
            self.logger.warning("Attempted to speak empty text.")
            return

        with self._lock:
            self._terminate_locked()
            synth = None
            try:
                synth = subprocess.Popen(self._synth_command(), stdin=subprocess.PIPE, stdout=subprocess.PIPE)
                player = subprocess.Popen(self._player_command(), stdin=synth.stdout)
            except OSError as e:
                self.logger.error(f"Failed to start speech processes: {e}")
                if synth is not None:
                    self._reap(synth)
                return

            # Player owns the read end now; piper gets SIGPIPE if the player exits.
            synth.stdout.close()
            self._synth, self._player = synth, player

            try:
                synth.stdin.write(text.encode("utf-8"))
                synth.stdin.close()
            except OSError as e:
                self.logger.error(f"Failed to send text to piper: {e}")
                self._terminate_locked()
                return

        self.logger.info(f"TTS speaking {len(text)} chars: {text!r}")

    def stop(self) -> None:
        with self._lock:
            if self._terminate_locked():
                self.logger.debug("TTS stopped")

    def _terminate_locked(self) -> bool:
        """Stop the current utterance. Returns True if one was still playing."""
        synth, player = self._synth, self._player
        self._synth = self._player = None
        was_playing = player is not None and player.poll() is None
        for process in (player, synth):
            if process is not None:
                self._reap(process)
        return was_playing

    def _reap(self, process: subprocess.Popen) -> None:
        if process.poll() is not None:
            return
        process.terminate()
        try:
            process.wait(timeout=self._config.stop_timeout_seconds)
        except subprocess.TimeoutExpired:
            self.logger.warning(f"Speech process {process.pid} ignored terminate, killing")
            process.kill()
            process.wait()

    @property
    def is_speaking(self) -> bool:
        with self._lock:
            return self._player is not None and self._player.poll() is None


def create_speech_sink(config: TtsConfig) -> SpeechSink:
    """Build the configured speech sink, falling back to logging when piper cannot run."""
    if config.engine == "log":
        return LoggingSpeechSink()

    missing = []
    if shutil.which(config.bin_path) is None:
        missing.append(f"piper binary '{config.bin_path}'")
    if not config.model_path or not os.path.isfile(config.model_path):
        missing.append(f"piper model '{config.model_path}'")
    if shutil.which(config.playback) is None:
        missing.append(f"player '{config.playback}'")

    if missing:
        logger.warning(f"Spoken responses disabled, not found: {', '.join(missing)}. Responses will be logged.")
        return LoggingSpeechSink()

    logger.info(f"Speaking responses with piper model {config.model_path}")
    return PiperSpeechSink(config)


class MediaKeySink:
    """Dispatches system media keys as a key down/up pair via pyautogui."""

    def dispatch(self, key: MediaKey) -> None:
        key_name = MEDIA_KEY_NAMES[key]
        logger.debug(f"Dispatching media key event: {key_name}")
        try:
            gui = _pyautogui()
            gui.keyDown(key_name)
            gui.keyUp(key_name)
        except Exception as e:
            logger.error(f"Failed to dispatch media key {key_name}: {e}", exc_info=True)
