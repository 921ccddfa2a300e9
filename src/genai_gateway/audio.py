"""
Audio helpers for the live and fallback voice paths.

PCM is 16-bit signed little-endian, interleaved when multi-channel.
Sample `s` maps to float `s / 32768.0`; the inverse scales by 32768,
clips to the int16 range and truncates toward zero.
"""

import io
import re
import base64
import wave
from typing import Optional, Union

import numpy as np

INPUT_SAMPLE_RATE = 16000
OUTPUT_SAMPLE_RATE = 24000
PCM_SCALE = 32768.0

_PCM_DTYPE = np.dtype("<i2")


def encode_base64(data: bytes) -> str:
    return base64.b64encode(bytes(data)).decode("ascii")


def decode_base64(data: str) -> bytes:
    return base64.b64decode(data)


def pcm16_to_float32(data: bytes, channels: int = 1) -> np.ndarray:
    """
    Decode PCM16 bytes into float32 samples shaped (frames, channels).

    Raises:
        ValueError: if the byte count is not a whole number of frames.
    """
    if channels < 1:
        raise ValueError("channels must be >= 1")
    if len(data) % (2 * channels):
        raise ValueError(
            f"PCM data length {len(data)} is not a multiple of {2 * channels} bytes"
        )
    samples = np.frombuffer(data, dtype=_PCM_DTYPE)
    floats = samples.astype(np.float32) / np.float32(PCM_SCALE)
    return floats.reshape(-1, channels)


def float32_to_pcm16(samples: Union[np.ndarray, list]) -> bytes:
    """
    Encode float samples in [-1, 1] as PCM16 bytes.
    A (frames, channels) array is interleaved frame by frame.
    """
    floats = np.asarray(samples, dtype=np.float32)
    scaled = np.clip(floats * np.float32(PCM_SCALE), -32768.0, 32767.0)
    return np.trunc(scaled).astype(_PCM_DTYPE).tobytes()


def pcm_duration(num_bytes: int, sample_rate: int, channels: int = 1) -> float:
    """Playback length in seconds of `num_bytes` of PCM16."""
    return num_bytes / (2 * channels * sample_rate)


def pcm_mime_type(sample_rate: int = INPUT_SAMPLE_RATE) -> str:
    return f"audio/pcm;rate={sample_rate}"


def parse_sample_rate(mime_type: Optional[str], default: int = OUTPUT_SAMPLE_RATE) -> int:
    """Read `rate=N` from a mime type like 'audio/L16;codec=pcm;rate=24000'."""
    if mime_type:
        match = re.search(r"rate=(\d+)", mime_type)
        if match:
            return int(match.group(1))
    return default


def pcm_to_wav(data: bytes, sample_rate: int = INPUT_SAMPLE_RATE, channels: int = 1) -> bytes:
    """Wrap raw PCM16 in a WAV container for upload as inline data."""
    buffer = io.BytesIO()
    with wave.open(buffer, "wb") as wav:
        wav.setnchannels(channels)
        wav.setsampwidth(2)
        wav.setframerate(sample_rate)
        wav.writeframes(data)
    return buffer.getvalue()


def wav_to_pcm(data: bytes) -> bytes:
    """Strip a WAV container, returning the PCM16 frames."""
    with wave.open(io.BytesIO(data), "rb") as wav:
        if wav.getsampwidth() != 2:
            raise ValueError(f"Expected 16-bit WAV, got {8 * wav.getsampwidth()}-bit")
        return wav.readframes(wav.getnframes())
