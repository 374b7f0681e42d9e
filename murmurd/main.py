#main.py  ==  murmurd entry point
           #↳ prepares the data directory and identity
           #↳ connects to the network (passive, direct or UPnP)
           #↳ opens the messaging session
           #↳ serves client commands over the local socket

import argparse
import asyncio
import sys

from murmurd.daemon import Daemon


def build_parser():
    parser = argparse.ArgumentParser(prog="murmurd", description="Local messaging identity daemon")
    parser.add_argument("--datadir", help="data directory (default: $MURMURD_DATADIR or ~/.murmurd)")
    parser.add_argument("--socket", help="IPC socket path, overrides ipc.socket from the config")
    return parser


def main(argv=None):
    args = build_parser().parse_args(argv)
    daemon = Daemon(datadir=args.datadir, socket_path=args.socket)
    try:
        return asyncio.run(daemon.run())
    except KeyboardInterrupt:
        print("\nInterrupted. Exiting")
        return 130


if __name__ == "__main__":
    sys.exit(main())
