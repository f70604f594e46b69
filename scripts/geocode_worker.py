# scripts/geocode_worker.py
import argparse
import logging
import signal
import threading

from dailycup.config import get_settings
from dailycup.geocode import GeocodeWorker


def main():
    parser = argparse.ArgumentParser(description="Resolve pending delivery addresses to coordinates.")
    parser.add_argument("--once", action="store_true", help="process one batch and exit")
    args = parser.parse_args()

    settings = get_settings()
    logging.basicConfig(level=settings.LOG_LEVEL.upper(), format="%(asctime)s %(levelname)s %(name)s: %(message)s")
    worker = GeocodeWorker(settings)

    if args.once:
        stats = worker.run_once()
        print(f"Processed batch: {stats}")
        return

    stop = threading.Event()
    signal.signal(signal.SIGTERM, lambda *_: stop.set())
    signal.signal(signal.SIGINT, lambda *_: stop.set())
    worker.run_forever(stop)


if __name__ == "__main__":
    main()
