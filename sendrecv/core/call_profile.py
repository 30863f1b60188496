"""Call profile loader from YAML files.

A profile tweaks the local media pipeline (test sources, STUN server) without
touching environment configuration.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Optional

import structlog
import yaml

from sendrecv.core.constants import PipelineConstants


logger = structlog.get_logger(__name__)


@dataclass
class CallProfile:
    """Media pipeline settings for one call.

    Fields:
        stun_server: STUN server URI handed to webrtcbin
        video: Send the video test source
        audio: Send the audio test source
        video_pattern: ``videotestsrc`` pattern nick
        audio_wave: ``audiotestsrc`` wave nick
        metadata: Optional metadata for documentation purposes
    """

    stun_server: str = PipelineConstants.STUN_SERVER
    video: bool = True
    audio: bool = True
    video_pattern: str = PipelineConstants.VIDEO_PATTERN
    audio_wave: str = PipelineConstants.AUDIO_WAVE
    metadata: Optional[Dict] = None

    @classmethod
    def from_yaml(cls, file_path: str | Path) -> "CallProfile":
        """Load a call profile from a YAML file.

        Missing keys keep their defaults.

        Args:
            file_path: Path to YAML profile

        Returns:
            CallProfile instance

        Raises:
            FileNotFoundError: If YAML file doesn't exist
            ValueError: If YAML file is invalid
        """
        file_path = Path(file_path)

        if not file_path.exists():
            raise FileNotFoundError(f"Call profile not found: {file_path}")

        logger.info("Loading call profile from YAML", file_path=str(file_path))

        try:
            with open(file_path, "r", encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML file: {e}") from e

        if data is None:
            data = {}
        if not isinstance(data, dict):
            raise ValueError("YAML file must contain a dictionary")

        unknown = set(data) - {
            "stun_server", "video", "audio", "video_pattern", "audio_wave", "metadata"
        }
        if unknown:
            raise ValueError(f"Unknown call profile keys: {sorted(unknown)}")

        for key in ("stun_server", "video_pattern", "audio_wave"):
            if key in data and not isinstance(data[key], str):
                raise ValueError(f"'{key}' field must be a string")
        for key in ("video", "audio"):
            if key in data and not isinstance(data[key], bool):
                raise ValueError(f"'{key}' field must be a boolean")

        profile = cls(**data)
        if not profile.video and not profile.audio:
            raise ValueError("Call profile must send at least one of video or audio")

        logger.info("Call profile loaded", **profile.to_dict())
        return profile

    @classmethod
    def from_yaml_or_default(cls, file_path: Optional[str | Path]) -> "CallProfile":
        """Load a profile if a path is given, otherwise return defaults.

        A given path must load successfully; there is no fallback.
        """
        if not file_path:
            logger.info("No call profile specified, using defaults")
            return cls()

        return cls.from_yaml(file_path)

    def to_dict(self) -> Dict:
        """Convert to dictionary for logging."""
        return {
            "stun_server": self.stun_server,
            "video": self.video,
            "audio": self.audio,
            "video_pattern": self.video_pattern,
            "audio_wave": self.audio_wave,
            "metadata": self.metadata,
        }
