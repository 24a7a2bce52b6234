"""Entry point for running the release tool as a module.

Usage:
    python -m tachyon_ops.release list
    python -m tachyon_ops.release promote-staging 0.2.0 --record-only
"""

from .cli import main

if __name__ == "__main__":
    main()
