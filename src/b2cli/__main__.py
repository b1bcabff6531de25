"""
b2cli entry point.

Usage:
    python -m b2cli ls my-bucket
    python -m b2cli upload ./report.pdf my-bucket reports/
"""

from b2cli.cli import main

if __name__ == "__main__":
    main()
