import sys

from wsecho.server.server import main

sys.exit(main())
