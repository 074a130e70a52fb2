"""
Chronos - forensic timeline generator for Windows disk images.

Reads NTFS $MFT records, Security/System event logs and Prefetch files from a
raw or EWF image and merges them into one chronologically ordered timeline.
"""

__version__ = "1.0.0"
