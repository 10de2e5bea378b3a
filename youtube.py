"""yt-dlp wrapper and output formatting for the YouTube tools."""

import asyncio
import json
import logging
import re
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

logger = logging.getLogger(__name__)

DEFAULT_LANGUAGE = "en"
DEFAULT_PLAYLIST_LIMIT = 50
MAX_PLAYLIST_LIMIT = 200

_INLINE_TIMESTAMP = re.compile(r"<\d{2}:\d{2}:\d{2}\.\d{3}>")
_CUE_TAG = re.compile(r"</?c>")
_ANY_TAG = re.compile(r"<[^>]+>")
_LANGUAGE_LINE = re.compile(r"^([a-z]{2}(-[a-zA-Z]+)?)\s+")


class YtDlpError(Exception):
    """yt-dlp could not be run or exited with a non-zero status."""


class YtDlp:
    """Runs the yt-dlp binary as a subprocess."""

    def __init__(self, path: str = "yt-dlp", timeout: float = 300):
        self.path = path
        self.timeout = timeout

    async def run(self, args: list[str], cwd: Optional[str] = None) -> str:
        """Run yt-dlp and return stdout. Raises YtDlpError on any failure."""
        try:
            proc = await asyncio.create_subprocess_exec(
                self.path,
                *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                stdin=asyncio.subprocess.DEVNULL,
                cwd=cwd,
            )
        except FileNotFoundError as e:
            raise YtDlpError(f"Failed to spawn yt-dlp: {e}") from e

        try:
            stdout_bytes, stderr_bytes = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            logger.warning(f"[YTDLP] Killed after {self.timeout}s: {' '.join(args[:-1])}")
            raise YtDlpError(f"yt-dlp timed out after {self.timeout:g}s")

        if proc.returncode != 0:
            stderr = stderr_bytes.decode(errors="replace").strip()
            raise YtDlpError(f"yt-dlp failed (code {proc.returncode}): {stderr}")
        return stdout_bytes.decode(errors="replace")


def strip_vtt_content(vtt_content: str) -> str:
    """Reduce a WEBVTT subtitle file to its spoken text, one line per cue line.

    The header block (first four lines), cue timings, positioning lines and
    inline tags are removed, and consecutive duplicate lines (rolling auto
    captions) are collapsed. Returns "" for anything that is not WEBVTT.
    """
    if not vtt_content or not vtt_content.strip():
        return ""

    lines = vtt_content.split("\n")
    if len(lines) < 4 or "WEBVTT" not in lines[0]:
        return ""

    text_lines = []
    for line in lines[4:]:
        if "-->" in line:
            continue
        if "align:" in line or "position:" in line:
            continue
        if not line.strip():
            continue

        cleaned = _INLINE_TIMESTAMP.sub("", line)
        cleaned = _CUE_TAG.sub("", cleaned)
        cleaned = _ANY_TAG.sub("", cleaned).strip()
        if cleaned and (not text_lines or text_lines[-1] != cleaned):
            text_lines.append(cleaned)

    return "\n".join(text_lines)


def format_duration(seconds, with_hours: bool = True) -> str:
    seconds = int(seconds or 0)
    if with_hours and seconds >= 3600:
        return f"{seconds // 3600}:{seconds % 3600 // 60:02d}:{seconds % 60:02d}"
    return f"{seconds // 60}:{seconds % 60:02d}"


def format_compact_metadata(metadata_json: str) -> str:
    data = json.loads(metadata_json)

    upload_date = data.get("upload_date") or "Unknown"
    if len(upload_date) == 8:
        upload_date = f"{upload_date[:4]}-{upload_date[4:6]}-{upload_date[6:]}"

    views = int(data.get("view_count") or 0)
    return "\n".join([
        f"Title: {data.get('title') or 'Unknown'}",
        f"Channel: {data.get('channel') or data.get('uploader') or 'Unknown'}",
        f"Duration: {format_duration(data.get('duration'))} | Views: {views:,} | Uploaded: {upload_date}",
    ])


@dataclass
class PlaylistVideo:
    index: int
    title: str
    url: str
    duration: str


@dataclass
class Playlist:
    title: str
    channel: str
    videos: list[PlaylistVideo]


def parse_playlist(json_lines: str) -> Playlist:
    """Parse `yt-dlp --dump-json --flat-playlist` output (one JSON object per line)."""
    title = ""
    channel = ""
    videos = []

    for line in json_lines.strip().split("\n"):
        if not line.strip():
            continue
        try:
            data = json.loads(line)
        except ValueError:
            logger.debug("[YTDLP] Skipping malformed playlist line")
            continue
        if not isinstance(data, dict):
            continue

        if not title and data.get("playlist_title"):
            title = data["playlist_title"]
        if not channel and (data.get("playlist_uploader") or data.get("channel")):
            channel = data.get("playlist_uploader") or data.get("channel")

        videos.append(PlaylistVideo(
            index=data.get("playlist_index") or len(videos) + 1,
            title=data.get("title") or "Unknown",
            url=data.get("webpage_url") or data.get("url") or "",
            duration=format_duration(data.get("duration"), with_hours=False),
        ))

    return Playlist(title=title or "Unknown Playlist", channel=channel or "Unknown", videos=videos)


def format_playlist(playlist: Playlist) -> str:
    lines = [
        f"Playlist: {playlist.title}",
        f"Channel: {playlist.channel}",
        f"Videos: {len(playlist.videos)}",
        "",
    ]
    for video in playlist.videos:
        lines.append(f"{video.index}. {video.title} ({video.duration})")
        lines.append(f"   {video.url}")
    return "\n".join(lines)


def parse_available_languages(list_subs_output: str) -> tuple[list[str], list[str]]:
    """Split `yt-dlp --list-subs` output into (manual, automatic) language codes."""
    manual = []
    automatic = []
    section = None

    for line in list_subs_output.split("\n"):
        if "Available subtitles" in line:
            section = manual
            continue
        if "Available automatic captions" in line:
            section = automatic
            continue

        match = _LANGUAGE_LINE.match(line)
        if match and section is not None:
            section.append(match.group(1))

    return manual, automatic


def format_available_languages(manual: list[str], automatic: list[str]) -> str:
    result = "Available Subtitles:\n\n"
    if manual:
        result += "Manual: " + ", ".join(manual) + "\n\n"
    else:
        result += "No manual subtitles.\n\n"
    if automatic:
        result += "Auto-generated: " + ", ".join(automatic)
    else:
        result += "No auto-generated captions."
    return result


def read_transcript(directory: Path) -> str:
    """First non-empty cleaned transcript among the .vtt files in directory."""
    for vtt_file in sorted(directory.glob("*.vtt")):
        transcript = strip_vtt_content(vtt_file.read_text(encoding="utf-8", errors="replace"))
        if transcript:
            return transcript
    return ""


async def get_video(ytdlp: YtDlp, url: str, language: str = DEFAULT_LANGUAGE) -> str:
    language = language or DEFAULT_LANGUAGE
    temp_dir = Path(tempfile.mkdtemp(prefix="youtube-"))
    try:
        metadata_json, _ = await asyncio.gather(
            ytdlp.run(["--dump-json", "--no-download", url]),
            ytdlp.run([
                "--write-sub",
                "--write-auto-sub",
                "--sub-lang", language,
                "--skip-download",
                "--sub-format", "vtt",
                "-o", "%(id)s.%(ext)s",
                url,
            ], cwd=str(temp_dir)),
        )
        header = format_compact_metadata(metadata_json)
        transcript = read_transcript(temp_dir)
    finally:
        shutil.rmtree(temp_dir, ignore_errors=True)

    if not transcript:
        return (
            f"{header}\n\n---\n\nNo subtitles found for language '{language}'. "
            "Try 'get_available_languages' to see what's available."
        )
    return f"{header}\n\n---\nTranscript:\n\n{transcript}"


async def get_playlist(ytdlp: YtDlp, url: str, limit: int = DEFAULT_PLAYLIST_LIMIT) -> str:
    limit = max(1, min(int(limit or DEFAULT_PLAYLIST_LIMIT), MAX_PLAYLIST_LIMIT))
    output = await ytdlp.run([
        "--dump-json",
        "--flat-playlist",
        "--playlist-end", str(limit),
        url,
    ])
    return format_playlist(parse_playlist(output))


async def get_available_languages(ytdlp: YtDlp, url: str) -> str:
    output = await ytdlp.run(["--list-subs", "--skip-download", url])
    return format_available_languages(*parse_available_languages(output))
