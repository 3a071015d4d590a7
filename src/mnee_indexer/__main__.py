import sys

from mnee_indexer.cli import main

sys.exit(main())
