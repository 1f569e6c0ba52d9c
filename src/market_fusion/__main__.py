import sys

from market_fusion.cli import main


sys.exit(main())
