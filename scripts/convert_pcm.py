"""
Convert raw PCM recordings to WAV.

Every ``.pcm`` file in the recordings directory is read as signed 16-bit little-endian,
48 kHz, mono (the recorder's encoder input format) and written next to it as ``.wav``.

Usage:
    python scripts/convert_pcm.py
    python scripts/convert_pcm.py --dir recordings --ffmpeg /usr/local/bin/ffmpeg
"""

import argparse
import asyncio
import os
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from ear.config import load_env_files  # noqa: E402
from ear.services.ffmpeg_manager.manager import FFmpegHandler  # noqa: E402


def find_pcm_files(directory: Path) -> list[Path]:
    return sorted(path for path in directory.iterdir() if path.suffix == ".pcm")


async def convert_directory(directory: Path, ffmpeg_path: str) -> int:
    """Convert every PCM file in a directory. Returns the number of failures."""
    handler = FFmpegHandler(None, ffmpeg_path)

    if not await handler.validate_ffmpeg():
        print(f"FFmpeg not found at: {ffmpeg_path}")
        return 1

    pcm_files = find_pcm_files(directory)
    print(f"Found {len(pcm_files)} PCM files to convert")

    failures = 0
    for pcm_file in pcm_files:
        output_file = pcm_file.with_suffix(".wav")
        print(f"Converting {pcm_file} to {output_file}...")

        success, _, stderr = await handler.convert_pcm_to_wav(str(pcm_file), str(output_file))
        if success:
            print(f"Converted successfully: {output_file}")
        else:
            failures += 1
            print(f"Conversion failed for {pcm_file}: {stderr.strip()}")

    return failures


async def main() -> int:
    load_env_files(project_root)

    parser = argparse.ArgumentParser(description="Convert raw PCM recordings to WAV.")
    parser.add_argument(
        "--dir",
        default=os.getenv("RECORDING_PATH", "recordings"),
        help="Directory holding the .pcm files (default: RECORDING_PATH or ./recordings)",
    )
    parser.add_argument(
        "--ffmpeg",
        default=os.getenv("FFMPEG_PATH", "ffmpeg"),
        help="FFmpeg executable (default: FFMPEG_PATH or ffmpeg)",
    )
    args = parser.parse_args()

    directory = Path(args.dir)
    if not directory.is_dir():
        print("No recordings directory found")
        return 0

    failures = await convert_directory(directory, args.ffmpeg)
    return 1 if failures else 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
