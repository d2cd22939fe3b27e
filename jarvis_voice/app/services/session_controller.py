import asyncio
import logging
import threading
import uuid
from concurrent.futures import Future
from typing import Any, Callable, Optional, Set

from jarvis_voice.app.config.app_config import GlobalAppConfig
from jarvis_voice.app.config.command_types import MatchOutcome
from jarvis_voice.app.event_bus import EventBus
from jarvis_voice.app.events.core_events import (
    CalibrationCompletedEvent,
    CommandMatchedEvent,
    FinalResultEvent,
    ListeningStatusEvent,
    PartialResultEvent,
    RecognitionEvent,
    RecognizerErrorEvent,
    RecognizerTimeoutEvent,
    SessionState,
    SessionStateChangedEvent,
    TranscriptLineEvent,
)
from jarvis_voice.app.services.audio.calibrator import CalibrationProfile, CalibrationResult, Calibrator
from jarvis_voice.app.services.audio.recorder import AudioSampler
from jarvis_voice.app.services.audio.stt.stt_utils import FINAL_KEY, PARTIAL_KEY, extract_hypothesis_text
from jarvis_voice.app.services.audio.stt.vosk_stt import VoskRecognizer, load_vosk_model
from jarvis_voice.app.services.command_matcher import CommandMatcher
from jarvis_voice.app.services.errors import ModelError
from jarvis_voice.app.services.output_sinks import MediaKeySink, SpeechSink
from jarvis_voice.app.services.storage.storage_service import CalibrationStore

logger = logging.getLogger(__name__)

CAN_START_FROM = (SessionState.READY, SessionState.DONE, SessionState.ERROR)

LISTENING_STATUS = "Listening..."
PAUSED_STATUS = "Paused"
MODEL_MISSING_ERROR = "Failed to load speech model."
CALIBRATION_TIP = "Tip: Calibrate first for better results in noise."


class SessionController:
    """Owns the voice session state and serializes every transition.

    All public operations and all recognizer callbacks run their transition logic
    under one asyncio lock, so session state and the pause flag are never observed in
    an inconsistent combination. The recognizer thread hands events over with
    ``submit_recognition_event``; calibration samples on a worker thread and re-enters
    the lock only to apply its result.

    State machine::

        START --model loaded--> READY          START --load failed--> ERROR
        READY --start_calibration--> CALIBRATING --finished--> READY
        READY/DONE/ERROR --toggle_listening--> LISTENING --toggle_listening--> DONE
        any --recognizer error--> ERROR        ERROR --recovery, model present--> READY

    Outbound notifications (state changes, transcript lines, listening status,
    command matches, calibration results) are published on the EventBus. Spoken
    responses go to the speech sink and media keys to the media-key sink.

    Attributes:
        _state: Current SessionState, written only by _transition.
        _paused: Pause flag, meaningful only while LISTENING.
        _recognizer: Active recognizer session, or None.
        _calibration_cancel: Set whenever the state leaves CALIBRATING.
        _fired_rules: Command rules already acted on during the current utterance.
    """

    def __init__(
        self,
        event_bus: EventBus,
        config: GlobalAppConfig,
        store: CalibrationStore,
        speech_sink: SpeechSink,
        media_keys: MediaKeySink,
        matcher: Optional[CommandMatcher] = None,
        calibrator: Optional[Calibrator] = None,
        model_loader: Callable[[str], Any] = load_vosk_model,
        recognizer_factory: Optional[Callable[[Any], Any]] = None,
        sampler_factory: Optional[Callable[[], AudioSampler]] = None,
    ) -> None:
        self._event_bus = event_bus
        self._config = config
        self._store = store
        self._speech = speech_sink
        self._media_keys = media_keys
        self._matcher = matcher or CommandMatcher.from_config(config.commands)
        self._calibrator = calibrator or Calibrator(config.calibration)
        self._model_loader = model_loader
        self._recognizer_factory = recognizer_factory or self._create_vosk_recognizer
        self._sampler_factory = sampler_factory or (lambda: AudioSampler(config.audio))

        self._state: SessionState = SessionState.START
        self._paused: bool = False
        self._error_cause: Optional[str] = None
        self._model: Any = None
        self._model_loading: bool = False
        self._recognizer: Any = None
        self._profile: CalibrationProfile = CalibrationProfile.invalid()
        self._fired_rules: Set[str] = set()

        self._transition_lock = asyncio.Lock()
        self._calibration_task: Optional[asyncio.Task] = None
        self._calibration_cancel = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    def _create_vosk_recognizer(self, model: Any) -> VoskRecognizer:
        return VoskRecognizer(model, self._config.audio.sample_rate, self._config)

    # Read-only view

    @property
    def state(self) -> SessionState:
        return self._state

    @property
    def is_paused(self) -> bool:
        return self._paused

    @property
    def is_listening(self) -> bool:
        return self._recognizer is not None

    @property
    def error_cause(self) -> Optional[str]:
        return self._error_cause

    @property
    def calibration_profile(self) -> CalibrationProfile:
        return self._profile

    @property
    def has_model(self) -> bool:
        return self._model is not None

    # Lifecycle

    async def initialize(self) -> None:
        """Bind to the running loop and load the persisted calibration profile."""
        self._loop = asyncio.get_running_loop()
        self._profile = await self._store.load()
        logger.debug(f"SessionController initialized (calibration valid={self._profile.valid})")

    async def shutdown(self) -> None:
        """Stop listening, cancel calibration and release collaborators."""
        async with self._transition_lock:
            if self._recognizer is not None:
                await self._stop_listening(SessionState.DONE)
            self._calibration_cancel.set()
            task = self._calibration_task

        if task is not None and not task.done():
            await task

        self._speech.stop()
        await self._store.shutdown()
        logger.info("SessionController shutdown complete")

    async def _transition(self, new_state: SessionState, cause: Optional[str] = None) -> None:
        """Single write path for the session state. Caller must hold the transition lock."""
        previous = self._state
        if previous == new_state and new_state != SessionState.ERROR:
            return

        self._state = new_state
        if previous == SessionState.CALIBRATING and new_state != SessionState.CALIBRATING:
            self._calibration_cancel.set()

        if new_state == SessionState.ERROR:
            self._error_cause = cause
            logger.error(f"Error State Set: {cause}")
        else:
            self._error_cause = None

        logger.info(f"State transition: {previous.value} -> {new_state.value}")
        await self._event_bus.publish(SessionStateChangedEvent(previous=previous, current=new_state, cause=cause))

    # Model

    async def load_model(self) -> bool:
        """Load the speech model off the event loop.

        With a model already present, returns the session to READY unless it is
        listening or calibrating. Otherwise only loads from START or ERROR.

        Returns:
            True if a model is available afterwards.
        """
        async with self._transition_lock:
            if self._model is not None:
                if self._state not in (SessionState.LISTENING, SessionState.CALIBRATING):
                    await self._transition(SessionState.READY)
                return True

            if self._state not in (SessionState.START, SessionState.ERROR) or self._model_loading:
                logger.debug(f"load_model ignored in state {self._state.value} (loading={self._model_loading})")
                return False
            self._model_loading = True

        logger.debug("Initializing model...")
        failure: Optional[str] = None
        try:
            model = await self._event_bus.run_in_thread_pool(self._model_loader, self._config.recognizer.model_path)
        except ModelError as e:
            logger.error(f"Model unpacking failed: {e}")
            failure = str(e)
        except Exception as e:
            logger.error(f"Unexpected error loading model: {e}", exc_info=True)
            failure = f"Failed to unpack/load the model: {e}"
        finally:
            self._model_loading = False

        if failure is not None:
            await self.on_model_load_failed(failure)
            return False

        async with self._transition_lock:
            self._model = model
            logger.info("Model unpacked and loaded successfully.")
            if self._state in (SessionState.START, SessionState.ERROR):
                await self._transition(SessionState.READY)
        return True

    async def on_model_load_failed(self, cause: str) -> None:
        async with self._transition_lock:
            self._model = None
            if self._recognizer is not None:
                await self._stop_listening(SessionState.ERROR, cause)
            else:
                await self._transition(SessionState.ERROR, cause)

    async def on_user_permission_denied(self) -> None:
        cause = "Permission denied: Microphone access is required."
        async with self._transition_lock:
            if self._recognizer is not None:
                await self._stop_listening(SessionState.ERROR, cause)
            else:
                await self._transition(SessionState.ERROR, cause)

    async def on_permission_granted(self) -> bool:
        """Recovery signal after the user grants microphone access."""
        return await self.load_model()

    async def recover(self) -> bool:
        """Return from ERROR to READY once a model is available, loading one if needed."""
        async with self._transition_lock:
            if self._state != SessionState.ERROR:
                return False
            if self._model is not None:
                await self._transition(SessionState.READY)
                return True
        return await self.load_model()

    # Calibration

    async def start_calibration(self) -> bool:
        """Launch a calibration run in the background.

        Returns:
            True if calibration started, False when it cannot run in the current state.
        """
        async with self._transition_lock:
            if self._state not in CAN_START_FROM or self._recognizer is not None:
                logger.warning(f"Cannot calibrate now (state={self._state.value}, listening={self.is_listening})")
                return False

            self._calibration_cancel.clear()
            await self._transition(SessionState.CALIBRATING)
            self._calibration_task = asyncio.create_task(self._run_calibration())
            return True

    async def wait_for_calibration(self) -> Optional[CalibrationProfile]:
        task = self._calibration_task
        if task is None:
            return None
        return await task

    async def _run_calibration(self) -> CalibrationProfile:
        operation_id = f"calibration-{uuid.uuid4().hex[:8]}"
        await self._event_bus.register_critical_operation(operation_id)
        try:
            logger.debug("Starting calibration process...")
            try:
                sampler = self._sampler_factory()
                result = await self._event_bus.run_in_thread_pool(
                    self._calibrator.calibrate, sampler, None, self._calibration_cancel.is_set
                )
            except Exception as e:
                logger.error(f"Calibration failed: {e}", exc_info=True)
                result = CalibrationResult(profile=CalibrationProfile.invalid(), error=str(e))

            try:
                if not await self._store.save(result.profile):
                    logger.warning("Calibration result could not be persisted")
            except Exception as e:
                logger.error(f"Calibration result could not be persisted: {e}", exc_info=True)

            async with self._transition_lock:
                self._profile = result.profile
                if self._state == SessionState.CALIBRATING:
                    await self._transition(SessionState.READY)
                else:
                    logger.info(f"Calibration finished after state changed to {self._state.value}; state left as is")

            await self._event_bus.publish(
                CalibrationCompletedEvent(
                    rms=result.profile.rms,
                    valid=result.profile.valid,
                    samples_used=result.blocks_used,
                    error=result.error,
                )
            )
            return result.profile
        finally:
            await self._event_bus.unregister_critical_operation(operation_id)

    # Listening

    async def toggle_listening(self) -> SessionState:
        """Start a recognition session, or stop the active one.

        Returns:
            The session state after the toggle.
        """
        retry_model_load = False
        async with self._transition_lock:
            if self._recognizer is not None:
                logger.debug("Stopping microphone recognition.")
                await self._stop_listening(SessionState.DONE)
                return self._state

            if self._state not in CAN_START_FROM:
                logger.warning(f"Cannot start listening now (state={self._state.value})")
                return self._state

            if self._model is None:
                logger.error("Recognize microphone requested but model is not loaded.")
                await self._transition(SessionState.ERROR, MODEL_MISSING_ERROR)
                retry_model_load = True
            else:
                await self._start_listening()

        if retry_model_load:
            await self.load_model()
        return self._state

    async def _start_listening(self) -> None:
        self._loop = asyncio.get_running_loop()
        if not self._profile.valid:
            logger.info(CALIBRATION_TIP)

        logger.debug("Starting microphone recognition.")
        recognizer = None
        try:
            recognizer = self._recognizer_factory(self._model)
            recognizer.start(self.submit_recognition_event)
        except Exception as e:
            logger.error(f"RecognizeMicrophone Start Error: {e}", exc_info=True)
            if recognizer is not None:
                await asyncio.to_thread(self._release_recognizer, recognizer)
            self._paused = False
            await self._transition(SessionState.ERROR, f"Failed to initialize microphone: {e}")
            return

        self._recognizer = recognizer
        self._paused = False
        self._fired_rules.clear()
        await self._transition(SessionState.LISTENING)
        await self._event_bus.publish(ListeningStatusEvent(status=LISTENING_STATUS))

    async def _stop_listening(self, target: SessionState, cause: Optional[str] = None) -> None:
        """Detach and release the active recognizer. Caller must hold the transition lock."""
        recognizer = self._recognizer
        self._recognizer = None
        self._paused = False
        self._fired_rules.clear()

        await self._transition(target, cause)

        if recognizer is not None:
            await asyncio.to_thread(self._release_recognizer, recognizer)

        if self._speech.is_speaking:
            self._speech.stop()
            logger.debug("TTS stopped on recognition stop.")

    @staticmethod
    def _release_recognizer(recognizer: Any) -> None:
        try:
            recognizer.stop()
        except Exception as e:
            logger.error(f"Error stopping recognizer: {e}", exc_info=True)
        finally:
            recognizer.shutdown()

    async def set_paused(self, paused: bool) -> bool:
        """Gate command matching and transcript updates without stopping recognition.

        Returns:
            True if the flag was applied, False outside LISTENING (flag forced to False).
        """
        async with self._transition_lock:
            if self._state != SessionState.LISTENING or self._recognizer is None:
                self._paused = False
                logger.debug(f"Pause request ignored in state {self._state.value}")
                return False

            if self._paused == paused:
                return True

            self._paused = paused
            logger.info(f"Session pause set to: {paused}")
            if paused:
                self._speech.stop()
            await self._event_bus.publish(ListeningStatusEvent(status=PAUSED_STATUS if paused else LISTENING_STATUS))
            return True

    # Recognition events

    def submit_recognition_event(self, event: RecognitionEvent) -> None:
        """Thread-safe hand-over of a recognizer callback to the controller's loop."""
        loop = self._loop
        if loop is None or loop.is_closed():
            logger.warning(f"Dropping {type(event).__name__}: controller loop not available")
            return
        try:
            future = asyncio.run_coroutine_threadsafe(self.on_recognition_event(event), loop)
            future.add_done_callback(self._handle_event_result)
        except RuntimeError as e:
            logger.debug(f"Event loop closed while submitting {type(event).__name__}: {e}")

    def _handle_event_result(self, future: Future) -> None:
        try:
            future.result()
        except Exception as e:
            logger.error(f"Error handling recognition event: {e}", exc_info=True)

    async def on_recognition_event(self, event: RecognitionEvent) -> Optional[MatchOutcome]:
        """Single ingestion point for recognizer callbacks.

        Returns:
            The MatchOutcome for an accepted partial hypothesis, otherwise None.
        """
        async with self._transition_lock:
            if isinstance(event, RecognizerErrorEvent):
                await self._handle_recognizer_error(event)
            elif isinstance(event, PartialResultEvent):
                return await self._handle_partial(event)
            elif isinstance(event, FinalResultEvent):
                await self._handle_final(event)
            elif isinstance(event, RecognizerTimeoutEvent):
                await self._handle_timeout()
            else:
                logger.warning(f"Unknown recognition event: {type(event).__name__}")
        return None

    async def _handle_recognizer_error(self, event: RecognizerErrorEvent) -> None:
        logger.error(f"Recognition Error: {event.cause}")
        cause = f"Recognizer error: {event.cause}"
        if self._recognizer is not None:
            await self._stop_listening(SessionState.ERROR, cause)
        else:
            self._paused = False
            await self._transition(SessionState.ERROR, cause)

    async def _handle_partial(self, event: PartialResultEvent) -> Optional[MatchOutcome]:
        partial_text = extract_hypothesis_text(event.hypothesis, PARTIAL_KEY)
        if not partial_text:
            return None

        if self._state != SessionState.LISTENING:
            logger.warning(f"Partial result received but state is not LISTENING. State: {self._state.value}")
            return None
        if self._paused:
            logger.debug(f"Partial result received while paused, ignoring: {partial_text}")
            return None

        outcome = self._matcher.match(partial_text)
        if not outcome.matched:
            await self._event_bus.publish(ListeningStatusEvent(status=f"Listening: {partial_text}..."))
            return outcome

        if outcome.rule_name in self._fired_rules:
            logger.debug(f"Command {outcome.rule_name} already handled for this utterance")
            return outcome
        self._fired_rules.add(outcome.rule_name)

        logger.info(f'Command Matched: "{partial_text}" -> Response: "{outcome.response}"')
        self._speech.speak(outcome.response)
        if outcome.side_effect is not None:
            self._media_keys.dispatch(outcome.side_effect)

        await self._event_bus.publish(
            CommandMatchedEvent(phrase=partial_text, response=outcome.response, media_key=outcome.side_effect)
        )
        await self._event_bus.publish(ListeningStatusEvent(status=outcome.response))
        await self._event_bus.publish(TranscriptLineEvent(kind="command", text=f"CMD: {partial_text}"))
        return outcome

    async def _handle_final(self, event: FinalResultEvent) -> None:
        text = extract_hypothesis_text(event.hypothesis, FINAL_KEY)
        if self._state not in (SessionState.LISTENING, SessionState.DONE):
            logger.warning(f"Final result received but state is not LISTENING or DONE. State: {self._state.value}")
            return

        self._fired_rules.clear()
        if text:
            await self._event_bus.publish(TranscriptLineEvent(kind="final", text=f"Final: {text}"))
        else:
            logger.debug("Empty final result.")

        if self._state == SessionState.DONE:
            logger.debug("Final result received after service stopped.")

    async def _handle_timeout(self) -> None:
        if self._state != SessionState.LISTENING or self._recognizer is None:
            logger.debug(f"Timeout ignored in state {self._state.value}")
            return
        logger.warning("Recognition Timeout (Silence Detected), continuing listening")
        await self._event_bus.publish(TranscriptLineEvent(kind="timeout", text="[Timeout]"))
