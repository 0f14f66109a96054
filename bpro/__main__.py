import sys

from bpro.cli import main

sys.exit(main())
