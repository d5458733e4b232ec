"""
tidal-queue: a background download job queue with a resumable chunked-upload
transport.
"""

__version__ = "0.4.0"
