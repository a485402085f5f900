"""dosscan - static denial-of-service detection for Solidity contracts."""

__version__ = "0.1.0"
