"""ytdrop: stage yt-dlp downloads behind one-time tokens."""

__version__ = "1.0.0"
