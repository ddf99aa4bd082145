"""Package entry point for ``python -m mtglog``.

WHY: Operators run the apps and maintenance commands as
``python -m mtglog <command>`` without installing a console script.

HOW: Delegates straight to the CLI's main() function.

RULES:
- This file must exist for ``python -m mtglog`` to work
- All argument handling lives in mtglog.cli
"""

import sys

if __name__ == "__main__":
    from mtglog.cli import main
    sys.exit(main())
