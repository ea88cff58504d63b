import sys

from apkpatch.cli import main

sys.exit(main())
