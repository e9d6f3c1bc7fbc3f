"""Entry point for ``python -m pq``.

The launcher starts daemons through this module as well
(``python -m pq daemon <PATH> --session <ID>``).
"""

import sys

from pq.cli import main

if __name__ == "__main__":
    sys.exit(main())
