"""Main package initialization."""

__version__ = "0.1.0"
__author__ = "ZK Pool Team"
__description__ = "Shielded pool core: commitments, accumulator, nullifiers, events and relayer"
