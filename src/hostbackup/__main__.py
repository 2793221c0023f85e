import sys

from hostbackup.cli import main

sys.exit(main())
