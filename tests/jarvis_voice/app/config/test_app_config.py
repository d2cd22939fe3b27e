import logging
import os

import pytest
import yaml

from jarvis_voice.app.config.app_config import GlobalAppConfig, get_config_path, load_app_config
from jarvis_voice.app.config.logging_config import LoggingConfigModel, setup_logging


class TestGlobalAppConfig:
    def test_defaults(self):
        config = GlobalAppConfig()

        assert config.audio.sample_rate == 16000
        assert config.audio.block_size == 800
        assert config.calibration.duration_ms == 5000
        assert config.calibration.noise_floor_threshold == 10.0
        assert config.recognizer.timeout_seconds is None
        assert config.storage.user_data_root is not None
        assert config.tts.engine == "piper"
        assert config.tts.model_path is None

    def test_storage_not_shared_between_instances(self, tmp_path):
        first = GlobalAppConfig()
        first.storage.user_data_root = str(tmp_path)

        assert GlobalAppConfig().storage.user_data_root != str(tmp_path)

    def test_calibration_path(self, app_config, tmp_path):
        assert app_config.storage.calibration_path == str(tmp_path / "calibration.json")


class TestLoadAppConfig:
    def test_overrides_from_yaml(self, tmp_path):
        config_file = tmp_path / "settings.yaml"
        config_file.write_text(
            yaml.safe_dump(
                {
                    "app": {
                        "audio": {"block_duration_ms": 100},
                        "recognizer": {"model_path": "/opt/vosk", "timeout_seconds": 8},
                        "commands": {"assistant_names": ["friday"]},
                        "logging": {"level": "DEBUG"},
                        "tts": {"model_path": "/voices/en_US.onnx", "playback_device": "plughw:1,0"},
                    }
                }
            ),
            encoding="utf-8",
        )

        config = load_app_config(str(config_file))

        assert config.audio.block_size == 1600
        assert config.recognizer.model_path == "/opt/vosk"
        assert config.recognizer.timeout_seconds == 8
        assert config.commands.assistant_names == ["friday"]
        assert config.logging.level == "DEBUG"
        assert config.tts.model_path == "/voices/en_US.onnx"
        assert config.tts.playback_device == "plughw:1,0"
        assert config.tts.engine == "piper"

    def test_missing_file_uses_defaults(self, tmp_path):
        config = load_app_config(str(tmp_path / "missing.yaml"))

        assert config.recognizer.model_path == "model"

    def test_missing_app_root_uses_defaults(self, tmp_path):
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("other: 1\n", encoding="utf-8")

        assert load_app_config(str(config_file)).audio.sample_rate == 16000

    def test_malformed_yaml_raises(self, tmp_path):
        config_file = tmp_path / "settings.yaml"
        config_file.write_text("app: [unclosed\n", encoding="utf-8")

        with pytest.raises(yaml.YAMLError):
            load_app_config(str(config_file))

    def test_get_config_path(self, tmp_path):
        assert get_config_path(str(tmp_path)) == str(tmp_path / "settings.yaml")


class TestLoggingConfigModel:
    def test_defaults(self):
        config = LoggingConfigModel()

        assert config.level == "INFO"
        assert config.enable_logs is True


@pytest.fixture
def restore_root_logging():
    root = logging.getLogger()
    saved_handlers, saved_level = root.handlers[:], root.level
    yield
    for handler in root.handlers[:]:
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


class TestSetupLogging:
    def test_writes_session_log(self, tmp_path, restore_root_logging):
        log_file = setup_logging(LoggingConfigModel(level="DEBUG", log_dir=str(tmp_path)))

        logging.getLogger("jarvis_voice.test").info("State transition: READY -> LISTENING")

        assert log_file.startswith(str(tmp_path / "logs"))
        assert os.path.basename(log_file) == "session.log"
        with open(log_file, "r", encoding="utf-8") as f:
            assert "State transition: READY -> LISTENING" in f.read()

    def test_console_only(self, restore_root_logging):
        assert setup_logging(LoggingConfigModel(log_to_file=False)) is None
        assert logging.getLogger().level == logging.INFO

    def test_disabled(self, restore_root_logging):
        assert setup_logging(LoggingConfigModel(enable_logs=False)) is None
        assert logging.getLogger().level > logging.CRITICAL
