"""Command line entry point: load a configuration and run the server."""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading

import yaml

from .options import load_config
from .server import DnsServer

logger = logging.getLogger("dnsrelay")


def main(argv: list[str] | None = None) -> int:
    """Run the server until a signal arrives or serving fails; return the exit status."""
    parser = argparse.ArgumentParser(prog="dnsrelay", description="Run the DNS relay server.")
    parser.add_argument("-config", "--config", default="config.yaml", help="config file path")
    args = parser.parse_args(argv)
    try:
        options = load_config(args.config)
    except (OSError, ValueError, TypeError, yaml.YAMLError) as exc:
        print(exc, file=sys.stderr)
        return 1

    server = DnsServer(options, None)
    stop = threading.Event()
    failures: list[Exception] = []

    def run() -> None:
        try:
            server.serve()
        except Exception as exc:
            failures.append(exc)
        finally:
            stop.set()

    previous = {}
    if threading.current_thread() is threading.main_thread():
        for name in ("SIGINT", "SIGTERM", "SIGQUIT"):
            if hasattr(signal, name):
                signum = getattr(signal, name)
                previous[signum] = signal.signal(signum, lambda *_: stop.set())

    thread = threading.Thread(target=run, daemon=True)
    thread.start()
    try:
        while not stop.wait(0.5):
            pass
    finally:
        for signum, handler in previous.items():
            signal.signal(signum, handler)

    if failures:
        logger.error("dns server serve error: %s", failures[0])
    print("Shutting down server...", file=sys.stderr)
    server.shutdown()
    thread.join()
    return 1 if failures else 0


if __name__ == "__main__":
    raise SystemExit(main())