"""Run the ILM command line: python -m ilm"""

import sys

from ilm.cli import main

if __name__ == "__main__":
    sys.exit(main())
