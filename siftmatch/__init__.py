"""
siftmatch: SIFT descriptor matching for multi-view reconstruction.
"""

__version__ = "0.1.0"
