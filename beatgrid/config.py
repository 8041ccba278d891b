"""Application configuration."""

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    """App settings with env var overrides."""

    # Audio
    sample_rate: int = 22050
    mono: bool = False  # keep channels; analysis reads channel 0

    # Analysis
    min_bpm: float = 30.0
    max_bpm: float = 300.0
    default_bpm: float = 120.0
    beats_per_measure: int = 4
    snap_window: float = 0.05  # seconds
    resync_min_shift: float = 0.1  # seconds
    downbeat_move_threshold: float = 0.1  # seconds
    difficult_confidence_cap: float = 0.6

    # Server
    host: str = "0.0.0.0"
    port: int = 8000
    max_upload_mb: int = 50

    model_config = {"env_prefix": "BEATGRID_"}


settings = Settings()
