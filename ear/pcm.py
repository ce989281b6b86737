import sys
from array import array

# -------------------------------------------------------------- #
# PCM Format
# -------------------------------------------------------------- #

# Encoder input contract: signed 16-bit little-endian, 48 kHz, mono
SAMPLE_RATE = 48000
SAMPLE_WIDTH = 2
CHANNELS = 1
SAMPLE_FORMAT = "s16le"

# py-cord's opus decoder always emits interleaved stereo
DECODER_CHANNELS = 2


# -------------------------------------------------------------- #
# PCM Utility Functions
# -------------------------------------------------------------- #


def calculate_pcm_duration_ms(
    num_bytes: int,
    sample_rate: int = SAMPLE_RATE,
    bits_per_sample: int = SAMPLE_WIDTH * 8,
    channels: int = CHANNELS,
) -> int:
    """
    Calculate the duration in milliseconds for a given number of PCM bytes.

    Example:
        >>> calculate_pcm_duration_ms(96000)  # 1 second of mono 48 kHz PCM
        1000
    """
    bytes_per_second = sample_rate * (bits_per_sample // 8) * channels
    return int(num_bytes * 1000 / bytes_per_second)


def calculate_pcm_bytes(
    duration_ms: int,
    sample_rate: int = SAMPLE_RATE,
    bits_per_sample: int = SAMPLE_WIDTH * 8,
    channels: int = CHANNELS,
) -> int:
    """
    Calculate the number of PCM bytes for a given duration.

    Example:
        >>> calculate_pcm_bytes(1000)
        96000
    """
    bytes_per_second = sample_rate * (bits_per_sample // 8) * channels
    return int(duration_ms * bytes_per_second / 1000)


def downmix_to_mono(data: bytes, channels: int = DECODER_CHANNELS) -> bytes:
    """
    Reduce interleaved 16-bit little-endian PCM to its first channel.

    Discord voice is captured from a single microphone, so both decoded channels carry
    the same signal and keeping one of them is lossless in practice. A trailing partial
    frame is dropped.
    """
    if channels == 1:
        return data

    frame_bytes = SAMPLE_WIDTH * channels
    usable = len(data) - (len(data) % frame_bytes)
    if usable <= 0:
        return b""

    samples = array("h")
    samples.frombytes(data[:usable])
    if sys.byteorder == "big":
        samples.byteswap()

    mono = samples[0::channels]
    if sys.byteorder == "big":
        mono.byteswap()
    return mono.tobytes()
