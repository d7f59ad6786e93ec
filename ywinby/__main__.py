import sys

from ywinby.heartbeat import run


sys.exit(run())
