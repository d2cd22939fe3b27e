from typing import List, Optional
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest
import pytest_asyncio

from jarvis_voice.app.config.app_config import GlobalAppConfig, StorageConfig
from jarvis_voice.app.event_bus import EventBus
from jarvis_voice.app.services.audio.calibrator import CalibrationProfile, Calibrator
from jarvis_voice.app.services.errors import AudioReadError, DeviceError

BLOCK_SIZE = 800

# Amplitudes of constant blocks and their scaled RMS metric (|a| / 32768 * 1000)
LOUD_AMPLITUDE = 1638  # ~49.99
SILENT_AMPLITUDE = 66  # ~2.01


def make_block(amplitude: int, size: int = BLOCK_SIZE) -> np.ndarray:
    """Constant-amplitude int16 block."""
    return np.full(size, amplitude, dtype=np.int16)


class FakeSampler:
    """In-memory capture device cycling through prepared blocks.

    Counts reads so tests can drive a calibration clock from it (one second per read).
    """

    def __init__(
        self,
        blocks: Optional[List[np.ndarray]] = None,
        open_error: Optional[Exception] = None,
        read_error_at: Optional[int] = None,
    ) -> None:
        self.blocks = list(blocks or [])
        self.open_error = open_error
        self.read_error_at = read_error_at
        self.reads = 0
        self.open_count = 0
        self.close_calls = 0
        self.release_count = 0
        self._open = False

    def open(self) -> "FakeSampler":
        self.open_count += 1
        if self.open_error is not None:
            raise self.open_error
        self._open = True
        return self

    def read_block(self) -> np.ndarray:
        if not self._open:
            raise AudioReadError("Capture device is not open")
        if self.read_error_at is not None and self.reads == self.read_error_at:
            raise AudioReadError("Audio read failed: -3")
        block = self.blocks[self.reads % len(self.blocks)] if self.blocks else make_block(0)
        self.reads += 1
        return block

    def close(self) -> None:
        self.close_calls += 1
        if self._open:
            self._open = False
            self.release_count += 1

    @property
    def is_open(self) -> bool:
        return self._open

    def clock(self) -> float:
        return float(self.reads)


@pytest.fixture
def app_config(tmp_path):
    """Application configuration with user data isolated in a temp directory."""
    return GlobalAppConfig(storage=StorageConfig(user_data_root=str(tmp_path)))


@pytest_asyncio.fixture
async def event_bus():
    bus = EventBus()
    await bus.start_worker()
    yield bus
    await bus.stop_worker()


@pytest.fixture
def captured_events(event_bus):
    """Every event published on the bus, in dispatch order."""
    from jarvis_voice.app.events.base_event import BaseEvent

    events = []
    event_bus.subscribe(BaseEvent, events.append)
    return events


@pytest.fixture
def mock_store():
    store = Mock()
    store.load = AsyncMock(return_value=CalibrationProfile.invalid())
    store.save = AsyncMock(return_value=True)
    store.shutdown = AsyncMock()
    return store


@pytest.fixture
def mock_speech_sink():
    sink = Mock()
    sink.is_speaking = False
    return sink


@pytest.fixture
def mock_media_keys():
    return Mock()


@pytest.fixture
def mock_recognizer():
    return Mock()


@pytest.fixture
def calibration_sampler():
    return FakeSampler(blocks=[make_block(SILENT_AMPLITUDE)])


@pytest.fixture
def controller_factory(
    event_bus, app_config, mock_store, mock_speech_sink, mock_media_keys, mock_recognizer, calibration_sampler
):
    """Build a SessionController wired to fakes; keyword overrides replace collaborators."""
    from jarvis_voice.app.services.session_controller import SessionController

    def factory(**overrides):
        sampler = overrides.pop("sampler", calibration_sampler)
        kwargs = dict(
            event_bus=event_bus,
            config=app_config,
            store=mock_store,
            speech_sink=mock_speech_sink,
            media_keys=mock_media_keys,
            calibrator=Calibrator(app_config.calibration, clock=sampler.clock),
            model_loader=Mock(return_value=object()),
            recognizer_factory=Mock(return_value=mock_recognizer),
            sampler_factory=lambda: sampler,
        )
        kwargs.update(overrides)
        return SessionController(**kwargs)

    return factory


@pytest_asyncio.fixture
async def ready_controller(controller_factory):
    """Controller with a loaded model, in READY."""
    controller = controller_factory()
    await controller.initialize()
    assert await controller.load_model() is True
    return controller


@pytest.fixture
def device_error():
    return DeviceError("Audio capture init failed: no device")
