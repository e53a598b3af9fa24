"""InstaSave proxy: post page → direct video URL, plus a streaming download relay."""

__version__ = "1.0.0"
