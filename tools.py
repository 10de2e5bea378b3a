"""MCP tools for youtube-mcp.

This module defines the tools (get_video, get_playlist,
get_available_languages) exposed to MCP clients. The work itself is done by
yt-dlp, see youtube.py.
"""

import logging

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError
from mcp.server.lowlevel import Server

import youtube
from config import Config

logger = logging.getLogger(__name__)

SERVER_NAME = "youtube-mcp"

# Create the FastMCP server instance
mcp = FastMCP(SERVER_NAME)

ytdlp = youtube.YtDlp()


def lowlevel_server() -> Server:
    """The low-level MCP server behind the FastMCP instance.

    The HTTP session registry runs this server over its own transports.
    FastMCP only exposes it as a private attribute, so it is looked up here
    and nowhere else.
    """
    return mcp._mcp_server


def init_tools(config: Config):
    """Point the tools at the configured yt-dlp binary."""
    ytdlp.path = config.ytdlp_path
    ytdlp.timeout = config.ytdlp_timeout
    logger.info(f"[STARTUP] yt-dlp: {ytdlp.path} (timeout {ytdlp.timeout:g}s)")


@mcp.tool()
async def get_video(url: str, language: str = youtube.DEFAULT_LANGUAGE) -> str:
    """Get a YouTube video's metadata and transcript in one call.

    Returns title, channel, duration, views, upload date, followed by the full
    transcript. Supports multiple languages. Use this for summarization or
    analysis of YouTube content.

    Args:
        url: YouTube video URL
        language: Subtitle language code (e.g., 'en', 'es', 'fr', 'de', 'ja'). Defaults to 'en'
    """
    logger.info(f"[TOOL] get_video invoked, language: {language}")
    try:
        return await youtube.get_video(ytdlp, url, language)
    except (youtube.YtDlpError, ValueError) as e:
        logger.warning(f"[TOOL] get_video failed: {e}")
        raise ToolError(str(e)) from e


@mcp.tool()
async def get_playlist(url: str, limit: int = youtube.DEFAULT_PLAYLIST_LIMIT) -> str:
    """Get information about a YouTube playlist including all video titles, durations, and URLs.

    Useful for understanding playlist contents before selecting specific
    videos to transcribe.

    Args:
        url: YouTube playlist URL
        limit: Maximum number of videos to list (default: 50, max: 200)
    """
    logger.info(f"[TOOL] get_playlist invoked, limit: {limit}")
    try:
        return await youtube.get_playlist(ytdlp, url, limit)
    except youtube.YtDlpError as e:
        logger.warning(f"[TOOL] get_playlist failed: {e}")
        raise ToolError(str(e)) from e


@mcp.tool()
async def get_available_languages(url: str) -> str:
    """List available subtitle languages for a YouTube video.

    Useful for checking what languages are available before requesting a
    transcript.

    Args:
        url: YouTube video URL
    """
    logger.info("[TOOL] get_available_languages invoked")
    try:
        return await youtube.get_available_languages(ytdlp, url)
    except youtube.YtDlpError as e:
        logger.warning(f"[TOOL] get_available_languages failed: {e}")
        raise ToolError(str(e)) from e
