"""
lorekeep - conversation sync, learning extraction and hybrid search.
"""

__version__ = "0.1.0"
