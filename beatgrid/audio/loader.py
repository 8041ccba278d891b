"""Decoding of audio files into AudioSignal buffers."""

from __future__ import annotations

import logging
from io import BytesIO
from pathlib import Path
from typing import Union

import librosa

from beatgrid.audio.signal import AudioSignal

logger = logging.getLogger(__name__)


def load_audio(
    file_path_or_buffer: Union[str, Path, BytesIO],
    sr: int = 22050,
    mono: bool = False,
) -> AudioSignal:
    """Decode an audio file or buffer, resampled to *sr*.

    All channels are kept unless *mono* is set; the pipeline analyzes
    channel 0. Raises ValueError when the decoder yields no samples.
    """
    audio, sample_rate = librosa.load(file_path_or_buffer, sr=sr, mono=mono)
    if audio.size == 0:
        raise ValueError("Decoded audio contains no samples")
    signal = AudioSignal(samples=audio, sample_rate=int(sample_rate))
    logger.info(f"Loaded {signal.channel_count} channel(s), {signal.duration:.1f}s at {signal.sample_rate} Hz")
    return signal
