from unittest.mock import AsyncMock, Mock

import pytest

from jarvis_voice.app.events.core_events import SessionState
from jarvis_voice.app.services.audio.calibrator import CalibrationProfile
from jarvis_voice.main import build_config, handle_command, parse_args


@pytest.fixture
def controller():
    mock = Mock()
    mock.toggle_listening = AsyncMock(return_value=SessionState.LISTENING)
    mock.start_calibration = AsyncMock(return_value=True)
    mock.set_paused = AsyncMock(return_value=True)
    mock.recover = AsyncMock(return_value=True)
    mock.state = SessionState.READY
    mock.is_paused = False
    mock.error_cause = None
    mock.calibration_profile = CalibrationProfile(rms=12.5, valid=True)
    return mock


class TestHandleCommand:
    @pytest.mark.asyncio
    async def test_listen_toggles(self, controller):
        assert await handle_command(controller, "listen\n") is True
        controller.toggle_listening.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, controller):
        await handle_command(controller, "pause")
        await handle_command(controller, "Resume")

        assert [c.args for c in controller.set_paused.await_args_list] == [(True,), (False,)]

    @pytest.mark.asyncio
    async def test_calibrate_rejected(self, controller, capsys):
        controller.start_calibration.return_value = False

        await handle_command(controller, "calibrate")

        assert "Cannot calibrate now." in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_recover(self, controller):
        await handle_command(controller, "recover")
        controller.recover.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_status(self, controller, capsys):
        await handle_command(controller, "status")

        assert "state=READY paused=False calibration=12.50 error=-" in capsys.readouterr().out

    @pytest.mark.asyncio
    @pytest.mark.parametrize("command", ["quit", "exit", " QUIT "])
    async def test_quit(self, controller, command):
        assert await handle_command(controller, command) is False

    @pytest.mark.asyncio
    async def test_unknown_prints_help(self, controller, capsys):
        assert await handle_command(controller, "dance") is True
        assert "Commands:" in capsys.readouterr().out


class TestArgs:
    def test_cli_overrides(self, tmp_path):
        args = parse_args(["--config", str(tmp_path / "missing.yaml"), "--model-path", "/opt/vosk", "--log-level", "DEBUG"])

        config = build_config(args)

        assert config.recognizer.model_path == "/opt/vosk"
        assert config.logging.level == "DEBUG"
