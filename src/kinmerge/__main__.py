"""Allow running the kinmerge CLI with python -m kinmerge."""

import sys

from kinmerge.cli import main

sys.exit(main())
