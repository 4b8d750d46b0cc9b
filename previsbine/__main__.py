import sys

from previsbine.cli import main

sys.exit(main())
