"""Allow ``python -m fleet``."""

import sys

from fleet import cli

if __name__ == "__main__":
    sys.exit(cli.main())
