"""
WAV framing for raw PCM batches.

The transcription service only accepts container formats, so every flushed
batch of raw 16 kHz 16-bit mono PCM is wrapped in a minimal 44-byte
RIFF/WAVE header before upload.
"""

import struct
from typing import NamedTuple

WAV_HEADER_SIZE = 44

# RIFF size, "WAVE", "fmt ", fmt size, format, channels, rate, byte rate,
# block align, bits per sample, "data", data size
_HEADER = struct.Struct("<4sI4s4sIHHIIHH4sI")


class WavHeader(NamedTuple):
    chunk_size: int
    audio_format: int
    channels: int
    sample_rate: int
    byte_rate: int
    block_align: int
    bits_per_sample: int
    data_size: int


def pcm_to_wav(
    pcm: bytes,
    sample_rate: int = 16000,
    channels: int = 1,
    bits_per_sample: int = 16,
) -> bytes:
    """Wrap raw PCM in a 44-byte WAV header. The payload is copied unchanged."""
    n = len(pcm)
    block_align = channels * bits_per_sample // 8
    header = _HEADER.pack(
        b"RIFF",
        n + 36,
        b"WAVE",
        b"fmt ",
        16,  # fmt chunk size
        1,   # PCM
        channels,
        sample_rate,
        sample_rate * block_align,
        block_align,
        bits_per_sample,
        b"data",
        n,
    )
    return header + bytes(pcm)


def read_wav_header(wav: bytes) -> WavHeader:
    """
    Decode the header written by pcm_to_wav.

    Raises:
        ValueError: input shorter than a header, or RIFF/WAVE magic missing.
    """
    if len(wav) < WAV_HEADER_SIZE:
        raise ValueError(f"WAV data too short: {len(wav)} bytes")
    (riff, chunk_size, wave, fmt, _fmt_size, audio_format, channels, sample_rate,
     byte_rate, block_align, bits_per_sample, data, data_size) = _HEADER.unpack_from(wav)
    if riff != b"RIFF" or wave != b"WAVE" or fmt != b"fmt " or data != b"data":
        raise ValueError("Not a PCM WAV header")
    return WavHeader(
        chunk_size=chunk_size,
        audio_format=audio_format,
        channels=channels,
        sample_rate=sample_rate,
        byte_rate=byte_rate,
        block_align=block_align,
        bits_per_sample=bits_per_sample,
        data_size=data_size,
    )
