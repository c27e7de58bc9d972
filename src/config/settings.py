"""
Settings - Configuration Module
Typed verification settings loaded from the system YAML config.

The engine never caches a snapshot beyond one challenge cycle: every cycle
starts with provider.current().
"""

import copy
import threading
from dataclasses import dataclass, field, asdict
from typing import Callable, List

import yaml

from src.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass(frozen=True)
class CaptchaSettings:
    interval_minutes: float = 30
    max_attempts: int = 3
    timeout_seconds: float = 180
    warning_seconds: float = 5
    cooldown_seconds: float = 2
    code_length: int = 6


@dataclass(frozen=True)
class FaceVerificationSettings:
    captcha_count_before_face: int = 3
    similarity_threshold: float = 0.7
    warning_seconds: float = 5
    timeout_seconds: float = 120


@dataclass(frozen=True)
class AntiSpoofingSettings:
    enabled: bool = True
    confidence_threshold: float = 0.55
    sharpness_min: float = 150
    contrast_min: float = 40
    colorfulness_min: float = 30
    texture_score_max: float = 0.15
    frame_count: int = 3
    inter_frame_delay_ms: int = 200
    consistency_variance_max: float = 0.05


@dataclass(frozen=True)
class MotionDetectionSettings:
    enabled: bool = True
    motion_min: float = 2.0
    motion_max: float = 8.0
    sample_window_ms: int = 2000
    sample_interval_ms: int = 200

    @property
    def sample_count(self) -> int:
        return max(2, self.sample_window_ms // max(1, self.sample_interval_ms))


@dataclass(frozen=True)
class GeneralSettings:
    inactivity_timeout_seconds: float = 300
    auto_logout_enabled: bool = True
    session_timeout_hours: float = 12
    heartbeat_ms: int = 1000
    activity_persist_throttle_seconds: float = 30


def _section(cls, raw: dict):
    known = {f for f in cls.__dataclass_fields__}
    unknown = set(raw) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys: {sorted(unknown)}")
    return cls(**{k: v for k, v in raw.items() if k in known})


@dataclass(frozen=True)
class VerificationSettings:
    """One immutable snapshot of every tunable the engine reads."""

    captcha: CaptchaSettings = field(default_factory=CaptchaSettings)
    face_verification: FaceVerificationSettings = field(default_factory=FaceVerificationSettings)
    anti_spoofing: AntiSpoofingSettings = field(default_factory=AntiSpoofingSettings)
    motion_detection: MotionDetectionSettings = field(default_factory=MotionDetectionSettings)
    general: GeneralSettings = field(default_factory=GeneralSettings)

    @classmethod
    def from_config(cls, config: dict) -> "VerificationSettings":
        """Build settings from the `verification` block of the system config."""
        config = config or {}
        return cls(
            captcha=_section(CaptchaSettings, config.get("captcha", {}) or {}),
            face_verification=_section(FaceVerificationSettings, config.get("face_verification", {}) or {}),
            anti_spoofing=_section(AntiSpoofingSettings, config.get("anti_spoofing", {}) or {}),
            motion_detection=_section(MotionDetectionSettings, config.get("motion_detection", {}) or {}),
            general=_section(GeneralSettings, config.get("general", {}) or {}),
        )

    def to_dict(self) -> dict:
        return asdict(self)


def _deep_merge(base: dict, update: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in update.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: str) -> dict:
    with open(config_path, "r") as f:
        return yaml.safe_load(f) or {}


class StaticSettingsProvider:
    """Holds a settings snapshot in memory; `set()` swaps it and notifies subscribers."""

    def __init__(self, settings: VerificationSettings = None):
        self._settings = settings or VerificationSettings()
        self._callbacks: List[Callable[[VerificationSettings], None]] = []
        self._lock = threading.Lock()

    def current(self) -> VerificationSettings:
        with self._lock:
            return self._settings

    def on_change(self, callback: Callable[[VerificationSettings], None]) -> Callable[[], None]:
        with self._lock:
            self._callbacks.append(callback)

        def unsubscribe():
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)
        return unsubscribe

    def set(self, settings: VerificationSettings):
        with self._lock:
            self._settings = settings
            callbacks = list(self._callbacks)
        for cb in callbacks:
            cb(settings)


class YamlSettingsProvider(StaticSettingsProvider):
    """
    Settings provider backed by the `verification` block of a YAML file.

    `reload()` re-reads the file, `update()` applies an admin override on top
    of the current values. Both notify on_change subscribers.
    """

    def __init__(self, config_path: str):
        self.config_path = config_path
        self._raw = (load_config(config_path).get("verification") or {})
        super().__init__(VerificationSettings.from_config(self._raw))
        logger.info(f"✅ Settings loaded from {config_path}")

    def reload(self) -> VerificationSettings:
        self._raw = (load_config(self.config_path).get("verification") or {})
        settings = VerificationSettings.from_config(self._raw)
        self.set(settings)
        logger.info("Settings reloaded.")
        return settings

    def update(self, partial: dict) -> VerificationSettings:
        self._raw = _deep_merge(self._raw, partial)
        settings = VerificationSettings.from_config(self._raw)
        self.set(settings)
        logger.info(f"Settings updated: {sorted(partial)}")
        return settings
