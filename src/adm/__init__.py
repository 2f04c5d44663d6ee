"""ADM Convert

Core package for converting lossless audio (WAV/AIFF) to loudness-normalized
AAC (M4A) with afconvert, then checking the result for clipping with afclip.
"""

__all__ = [
    "__version__",
]

# Keep in sync with pyproject.toml
__version__ = "0.1.0"
