"""Module entry point for ``python -m winlock``."""

from winlock.cli import main

if __name__ == "__main__":
    main()
