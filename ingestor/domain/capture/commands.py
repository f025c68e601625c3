"""Argument templates for the external capture binaries.

The source process (streamlink) writes the stream to stdout; each encoder
(ffmpeg) reads it from stdin and writes segments named
`<kind>_<epoch_ms>_<seq>.<ext>` into its media directory.
"""

from __future__ import annotations

import time
from dataclasses import dataclass
from pathlib import Path

from ingestor.schemas import MediaKind

USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/122.0.0.0 Safari/537.36"
)

_FILE_PREFIX = {
    MediaKind.AUDIO: "audio",
    MediaKind.IMAGE: "capture",
    MediaKind.VIDEO: "video",
}


@dataclass(frozen=True)
class CaptureCommands:
    streamlink_bin: str = "streamlink"
    ffmpeg_bin: str = "ffmpeg"
    origin: str = "https://chzzk.naver.com"
    segment_seconds: int = 10
    image_interval_seconds: int = 30

    def source(self, stream_url: str) -> list[str]:
        return [
            self.streamlink_bin,
            "--http-header", f"User-Agent={USER_AGENT}",
            "--http-header", f"Referer={self.origin.rstrip('/')}/",
            "--http-header", f"Origin={self.origin.rstrip('/')}",
            "-O",
            stream_url,
            "best",
        ]

    def output_pattern(self, kind: MediaKind, media_dir: Path, started_ms: int | None = None) -> Path:
        started_ms = int(time.time() * 1000) if started_ms is None else started_ms
        return media_dir / f"{_FILE_PREFIX[kind]}_{started_ms}_%03d{kind.extension}"

    def encoder(self, kind: MediaKind, media_dir: Path, started_ms: int | None = None) -> list[str]:
        output = str(self.output_pattern(kind, media_dir, started_ms))
        if kind is MediaKind.AUDIO:
            return [
                self.ffmpeg_bin, "-i", "-",
                "-map", "0:a", "-c:a", "copy",
                "-f", "segment", "-segment_time", str(self.segment_seconds),
                "-movflags", "+faststart",
                "-write_xing", "1", "-id3v2_version", "3",
                "-timestamp", "now",
                output,
            ]
        if kind is MediaKind.IMAGE:
            return [
                self.ffmpeg_bin, "-i", "-",
                "-f", "image2",
                "-vf", f"fps=1/{self.image_interval_seconds}",
                "-timestamp", "now",
                output,
            ]
        return [
            self.ffmpeg_bin, "-i", "-",
            "-map", "0:v", "-map", "0:a?", "-c", "copy",
            "-f", "segment", "-segment_time", str(self.segment_seconds),
            "-reset_timestamps", "1",
            output,
        ]
