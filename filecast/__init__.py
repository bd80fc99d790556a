"""
filecast - single-file transfer over a length-prefixed TCP protocol

The sender serves one file to each peer that connects, one at a time.
The receiver connects once, fetches the file and exits.
"""

__version__ = "0.1.0"
