import logging
import threading

from .config import Settings
from .geocode import GeocodeWorker

logger = logging.getLogger(__name__)

_thread = None
_stop = threading.Event()


def start_worker(settings: Settings):
    global _thread
    if _thread is None:
        _stop.clear()
        worker = GeocodeWorker(settings)
        _thread = threading.Thread(target=worker.run_forever, args=(_stop,), name="geocode-worker", daemon=True)
        _thread.start()
    return _thread


def stop_worker(timeout: float = 5.0) -> None:
    global _thread
    if _thread is None:
        return
    _stop.set()
    _thread.join(timeout)
    _thread = None
