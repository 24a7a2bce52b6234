"""Entry point for running migrations as a module.

Usage:
    python -m tachyon_ops.db.migrations --env local migrate
    python -m tachyon_ops.db.migrations --env staging status
"""

from .cli import main

if __name__ == "__main__":
    main()
