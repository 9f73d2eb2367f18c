"""
Entry point for running the relayer as a module.

Usage:
    python -m emailwallet_relayer
"""

from emailwallet_relayer.cli import main

if __name__ == "__main__":
    main()
