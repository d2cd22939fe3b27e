import argparse
import asyncio
import logging
import signal
import sys
import threading
from typing import List, Optional

from jarvis_voice.app.config.app_config import GlobalAppConfig, load_app_config
from jarvis_voice.app.config.logging_config import setup_logging
from jarvis_voice.app.event_bus import EventBus
from jarvis_voice.app.events.core_events import (
    CalibrationCompletedEvent,
    ListeningStatusEvent,
    SessionStateChangedEvent,
    TranscriptLineEvent,
)
from jarvis_voice.app.services.output_sinks import MediaKeySink, create_speech_sink
from jarvis_voice.app.services.session_controller import SessionController
from jarvis_voice.app.services.storage.storage_service import CalibrationStore

logger = logging.getLogger(__name__)

HELP_TEXT = "Commands: listen, calibrate, pause, resume, recover, status, quit"


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="jarvis-voice", description="Voice command session controller")
    parser.add_argument("--config", help="Path to settings.yaml")
    parser.add_argument("--model-path", help="Path to the unpacked Vosk model directory")
    parser.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    return parser.parse_args(argv)


def build_config(args: argparse.Namespace) -> GlobalAppConfig:
    app_config = load_app_config(config_path=args.config)
    if args.model_path:
        app_config.recognizer.model_path = args.model_path
    if args.log_level:
        app_config.logging.level = args.log_level
    return app_config


def _print_event(event) -> None:
    if isinstance(event, SessionStateChangedEvent):
        suffix = f" ({event.cause})" if event.cause else ""
        print(f"[state] {event.current.value}{suffix}")
    elif isinstance(event, TranscriptLineEvent):
        print(event.text)
    elif isinstance(event, ListeningStatusEvent):
        print(f"[status] {event.status}")
    elif isinstance(event, CalibrationCompletedEvent):
        if event.valid:
            print(f"Calibration complete. Average RMS: {event.rms:.2f}")
        elif event.error:
            print(f"Calibration failed: {event.error}")
        else:
            print("Calibration failed: No significant audio detected.")


def _subscribe_console(event_bus: EventBus) -> None:
    for event_type in (SessionStateChangedEvent, TranscriptLineEvent, ListeningStatusEvent, CalibrationCompletedEvent):
        event_bus.subscribe(event_type=event_type, handler=_print_event)


def _read_stdin(loop: asyncio.AbstractEventLoop, lines: asyncio.Queue) -> None:
    for line in sys.stdin:
        loop.call_soon_threadsafe(lines.put_nowait, line)
    loop.call_soon_threadsafe(lines.put_nowait, None)


async def handle_command(controller: SessionController, command: str) -> bool:
    """Apply one console command. Returns False when the session should end."""
    command = command.strip().lower()
    if command in ("quit", "exit"):
        return False
    if command == "listen":
        await controller.toggle_listening()
    elif command == "calibrate":
        if not await controller.start_calibration():
            print("Cannot calibrate now.")
    elif command == "pause":
        await controller.set_paused(True)
    elif command == "resume":
        await controller.set_paused(False)
    elif command == "recover":
        await controller.recover()
    elif command == "status":
        profile = controller.calibration_profile
        print(
            f"state={controller.state.value} paused={controller.is_paused} "
            f"calibration={'%.2f' % profile.rms if profile.valid else 'none'} error={controller.error_cause or '-'}"
        )
    elif command:
        print(HELP_TEXT)
    return True


async def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    app_config = build_config(args)
    log_file = setup_logging(config=app_config.logging)
    if log_file:
        logger.info(f"Session log: {log_file}")

    event_bus = EventBus()
    await event_bus.start_worker()
    _subscribe_console(event_bus)

    controller = SessionController(
        event_bus=event_bus,
        config=app_config,
        store=CalibrationStore(app_config),
        speech_sink=create_speech_sink(app_config.tts),
        media_keys=MediaKeySink(),
    )
    await controller.initialize()

    stop_requested = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, getattr(signal, "SIGTERM", None)):
        if sig is None:
            continue
        try:
            loop.add_signal_handler(sig, stop_requested.set)
        except NotImplementedError:
            logger.debug(f"Signal handlers not supported for {sig}")

    await controller.load_model()
    print(HELP_TEXT)

    lines: asyncio.Queue = asyncio.Queue()
    threading.Thread(target=_read_stdin, args=(loop, lines), daemon=True, name="ConsoleInput").start()

    try:
        while not stop_requested.is_set():
            reader = asyncio.ensure_future(lines.get())
            stopper = asyncio.ensure_future(stop_requested.wait())
            done, pending = await asyncio.wait({reader, stopper}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            if reader not in done:
                break
            line = reader.result()
            if line is None or not await handle_command(controller, line):
                break
    finally:
        logger.info("Shutting down")
        await controller.shutdown()
        await event_bus.stop_worker()

    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
