"""
Main entry point for running the package as a module.

Usage:
    python -m assetflow sizes
    python -m assetflow regenerate --path product/202601/photo.jpg
    python -m assetflow ingest --bucket assets --name uploads/product/202601/photo.jpg
    python -m assetflow init-db
"""

import sys
from .cli import main

if __name__ == '__main__':
    sys.exit(main())
