"""
Stagegate main entry point for module execution.

Usage:
    python -m stagegate
"""

from .cli import main

if __name__ == "__main__":
    main()
