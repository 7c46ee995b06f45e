"""Entry point for ``python -m schemaledger``."""
import sys

from .cli import main

sys.exit(main())
