"""Relay sealed epoch checkpoints to Bitcoin as chained OP_RETURN transactions."""

__version__ = "0.1.0"