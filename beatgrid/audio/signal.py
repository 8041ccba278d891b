"""Read-only audio buffer handed to the analysis pipeline."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np


@dataclass(frozen=True, eq=False)
class AudioSignal:
    """Decoded audio, stored as a (channels, samples) float32 array.

    The underlying array is marked read-only so no stage can modify the
    caller's samples in place.
    """

    samples: np.ndarray
    sample_rate: int

    def __post_init__(self):
        data = np.asarray(self.samples, dtype=np.float32)
        if data.ndim == 1:
            data = data[np.newaxis, :]
        if data.ndim != 2:
            raise ValueError(f"Expected 1-D or 2-D samples, got shape {data.shape}")
        if self.sample_rate <= 0:
            raise ValueError(f"Invalid sample rate: {self.sample_rate}")
        data = np.array(data, copy=True)
        data.setflags(write=False)
        object.__setattr__(self, "samples", data)

    @classmethod
    def from_mono(cls, audio: np.ndarray, sr: int = 22050) -> AudioSignal:
        return cls(samples=np.asarray(audio).reshape(1, -1), sample_rate=sr)

    @property
    def channel_count(self) -> int:
        return int(self.samples.shape[0])

    @property
    def num_samples(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.num_samples / self.sample_rate

    def channel_data(self, channel: int = 0) -> np.ndarray:
        """Samples of one channel (read-only view)."""
        if not 0 <= channel < self.channel_count:
            raise IndexError(f"Channel {channel} out of range (have {self.channel_count})")
        return self.samples[channel]
