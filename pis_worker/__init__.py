"""
PIS Worker

Background worker that turns uploaded photos into web-ready derivatives
and packages album downloads.
"""

__version__ = "0.1.0"
