import sys

from m365relay.app import main

sys.exit(main())
