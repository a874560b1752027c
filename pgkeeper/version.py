"""This module specifies the current pgkeeper version.

:var __version__: the current pgkeeper version.
"""
__version__ = '1.0.0'
