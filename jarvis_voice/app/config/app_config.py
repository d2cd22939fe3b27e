import logging
import os
from typing import List, Literal, Optional

import yaml
from pydantic import BaseModel, Field

from jarvis_voice.app.config.logging_config import LoggingConfigModel

logger = logging.getLogger(__name__)


class AudioConfig(BaseModel):
    """Configuration for microphone capture and block sizing.

    Capture is always 16-bit mono PCM. Every read returns a fixed-size block whose
    length is derived from the sample rate and the block duration.
    """

    sample_rate: int = 16000
    channels: int = 1
    dtype: Literal["int16"] = Field("int16", description="Sample format delivered by the capture device")
    device: Optional[int] = None
    block_duration_ms: int = Field(default=50, description="Duration of one fixed-size capture block")

    @property
    def block_size(self) -> int:
        return int(self.sample_rate * self.block_duration_ms / 1000)


class CalibrationConfig(BaseModel):
    """Configuration for ambient noise calibration.

    Blocks whose scaled RMS metric does not exceed the noise floor threshold are
    treated as silence and left out of the average.
    """

    duration_ms: int = Field(default=5000, description="Hard wall-clock bound for one calibration run")
    noise_floor_threshold: float = Field(default=10.0, description="Scaled RMS at or below which a block is discarded")


class RecognizerConfig(BaseModel):
    """Configuration for the Vosk recognizer session."""

    model_path: str = Field(default="model", description="Path to the unpacked Vosk model directory")
    timeout_seconds: Optional[float] = Field(
        default=None, description="Interval without a final result before a timeout event is delivered (None disables)"
    )
    stop_join_timeout_seconds: float = Field(default=5.0, description="Wait for the capture thread when stopping")


class CommandsConfig(BaseModel):
    """Voice command vocabulary and the spoken responses for each command.

    All phrases are matched against lower-cased, trimmed partial hypotheses.
    """

    greeting_tokens: List[str] = ["hello", "hallo"]
    assistant_names: List[str] = ["jarvis", "charlie", "java"]
    wake_word_max_length: int = Field(default=15, description="Wake word only fires on hypotheses shorter than this")

    play_pause_phrases: List[str] = ["play music", "pause music", "stop music", "toggle music"]
    play_pause_exact: List[str] = ["play", "pause"]
    next_track_phrases: List[str] = ["next song", "next track"]
    next_track_exact: List[str] = ["next"]
    previous_track_phrases: List[str] = ["previous song", "last song", "previous track", "go back"]
    previous_track_exact: List[str] = ["previous", "back"]

    greeting_response: str = "Hello Sir"
    wake_word_response: str = "Yes Sir?"
    play_pause_response: str = "Toggling Music Playback…"
    next_track_response: str = "Playing next song…"
    previous_track_response: str = "Playing previous song…"


class TtsConfig(BaseModel):
    """Configuration for spoken command responses.

    The piper engine pipes synthesized audio into a playback command. When the piper
    binary, the voice model or the player is unavailable, responses are only logged.
    """

    engine: Literal["piper", "log"] = Field(default="piper", description="Speech engine for command responses")
    bin_path: str = Field(default="piper", description="Piper executable name or path")
    model_path: Optional[str] = Field(default=None, description="Piper voice model (.onnx)")
    playback: str = Field(default="aplay", description="Player reading WAV audio from stdin")
    playback_device: Optional[str] = Field(default=None, description="ALSA device passed to the player with -D")
    stop_timeout_seconds: float = Field(default=1.0, description="Wait for interrupted speech processes to exit")


class AppInfoConfig(BaseModel):
    default_app_name_for_data_dir: str = Field(default="jarvis_voice", description="Default app name for data directory")
    user_data_dir_suffix: str = Field(default="_data", description="Suffix for user data directory")


class StorageConfig(BaseModel):
    """Configuration for the persisted calibration value.

    ``user_data_root`` is resolved in GlobalAppConfig.__init__ unless provided.
    """

    user_data_root: Optional[str] = None
    calibration_filename: str = "calibration.json"

    @property
    def calibration_path(self) -> str:
        return os.path.join(self.user_data_root or ".", self.calibration_filename)


class GlobalAppConfig(BaseModel):
    """Main application configuration container aggregating all subsystem configs."""

    logging: LoggingConfigModel = LoggingConfigModel()
    app_info: AppInfoConfig = AppInfoConfig()
    audio: AudioConfig = AudioConfig()
    calibration: CalibrationConfig = CalibrationConfig()
    recognizer: RecognizerConfig = RecognizerConfig()
    commands: CommandsConfig = CommandsConfig()
    tts: TtsConfig = TtsConfig()
    storage: StorageConfig = Field(default_factory=StorageConfig)

    def __init__(self, **data: any) -> None:
        """Initialize global configuration and resolve the user data directory.

        Args:
            **data: Arbitrary keyword arguments passed to Pydantic for config overrides.
        """
        super().__init__(**data)
        if self.storage.user_data_root is None:
            self.storage.user_data_root = get_default_user_data_root(app_info=self.app_info)


CONFIG_FILE_NAME = "settings.yaml"


def get_config_path(config_dir: Optional[str] = None, config_file: str = CONFIG_FILE_NAME) -> str:
    """Get configuration file path.

    Uses ``config_dir`` when given, otherwise the default user data root.
    """
    if config_dir:
        return os.path.join(config_dir, config_file)
    return os.path.join(get_default_user_data_root(app_info=AppInfoConfig()), config_file)


def load_app_config(config_path: Optional[str] = None) -> GlobalAppConfig:
    """Load application configuration from YAML file with fallback to defaults.

    Returns default GlobalAppConfig if the file is missing, empty, or lacks the
    required 'app' root key. Raises for YAML parsing errors or other unexpected failures.

    Args:
        config_path: Optional explicit path to configuration file.

    Returns:
        Loaded GlobalAppConfig instance with overrides applied, or default instance.
    """
    actual_config_path = config_path or get_config_path()
    logger.debug(f"Loading application configuration from: {actual_config_path}")

    try:
        with open(actual_config_path, "r") as f:
            config_data = yaml.safe_load(f)
        if not config_data or "app" not in config_data:
            logger.warning(
                f"Configuration file {actual_config_path} is empty or missing 'app' root. Using default GlobalAppConfig."
            )
            return GlobalAppConfig()
        return GlobalAppConfig(**config_data.get("app", {}))
    except FileNotFoundError:
        logger.warning(f"Configuration file not found at {actual_config_path}. Using default GlobalAppConfig.")
        return GlobalAppConfig()
    except yaml.YAMLError as e:
        logger.error(f"Error parsing YAML configuration file {actual_config_path}: {e}")
        raise
    except Exception as e:
        logger.error(f"Failed to load configuration from {actual_config_path}: {e}")
        raise


def get_default_user_data_root(app_info: AppInfoConfig) -> str:
    """Get default user data root directory based on operating system conventions.

    Uses %APPDATA% on Windows and the home directory elsewhere.
    """
    if os.name == "nt":
        base = os.environ.get("APPDATA", os.path.expanduser("~"))
    else:
        base = os.path.expanduser("~")
    return os.path.join(base, app_info.default_app_name_for_data_dir + app_info.user_data_dir_suffix)
