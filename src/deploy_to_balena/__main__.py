"""Allow running the action with `python -m deploy_to_balena`."""

import sys

from deploy_to_balena.main import main

if __name__ == "__main__":
    sys.exit(main())
